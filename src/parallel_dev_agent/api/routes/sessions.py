"""Session lifecycle, git and deploy endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...models import GitErrorKind, GitFileMode, GitResult, Session, SessionStatus
from ...orchestration.services import AgentServices
from . import get_services

router = APIRouter()


class CreateSessionRequest(BaseModel):
    workspace_id: int
    starter_branch: str
    agent_id: int
    name: Optional[str] = None


class UpdateSessionRequest(BaseModel):
    status: Optional[SessionStatus] = None
    has_unread_message: Optional[bool] = None
    name: Optional[str] = None


class GitResultResponse(BaseModel):
    """Outcome of a git workflow."""
    ok: bool
    error: Optional[GitErrorKind] = None
    detail: Optional[str] = None

    @classmethod
    def from_result(cls, result: GitResult) -> "GitResultResponse":
        return cls(ok=result.ok, error=result.error, detail=result.detail)


class PathsRequest(BaseModel):
    paths: list[str] = Field(min_length=1)


class BulkResponse(BaseModel):
    succeeded: list[str]
    failed: dict[str, str]
    partial: bool


class CommitRequest(BaseModel):
    message: str


class DeployRequest(BaseModel):
    environment_id: int
    restart: bool = False


class DeployResponse(BaseModel):
    copied: int
    skipped: int
    deleted: int
    errors: list[str]


@router.post("/sessions", response_model=Session, status_code=201)
async def create_session(body: CreateSessionRequest, services: AgentServices = Depends(get_services)):
    return await services.sessions.create_session(
        body.workspace_id, body.starter_branch, body.agent_id, body.name
    )


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(session_id: int, services: AgentServices = Depends(get_services)):
    session = services.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.patch("/sessions/{session_id}", response_model=Session)
async def update_session(
    session_id: int, body: UpdateSessionRequest, services: AgentServices = Depends(get_services)
):
    return await services.sessions.update_session(
        session_id,
        status=body.status,
        has_unread_message=body.has_unread_message,
        name=body.name,
    )


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: int, services: AgentServices = Depends(get_services)):
    if not await services.sessions.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True}


@router.post("/sessions/{session_id}/merge", response_model=GitResultResponse)
async def merge_to_main(session_id: int, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.sessions.merge_to_main(session_id))


@router.post("/sessions/{session_id}/push", response_model=GitResultResponse)
async def push_and_complete(session_id: int, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.sessions.push_and_complete(session_id))


@router.post("/sessions/{session_id}/pull", response_model=GitResultResponse)
async def pull_from_starter(session_id: int, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.sessions.pull_from_starter(session_id))


@router.post("/sessions/{session_id}/reset", response_model=GitResultResponse)
async def reset_session(session_id: int, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.sessions.reset_session(session_id))


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: int, services: AgentServices = Depends(get_services)):
    return {"success": await services.sessions.cancel_session(session_id)}


@router.post("/sessions/{session_id}/cancel-working")
async def cancel_working_messages(session_id: int, services: AgentServices = Depends(get_services)):
    return {"success": await services.sessions.cancel_working_messages(session_id)}


@router.post("/messages/{message_id}/cancel")
async def cancel_message(message_id: int, services: AgentServices = Depends(get_services)):
    return {"success": await services.sessions.cancel_message(message_id)}


# Git


@router.get("/sessions/{session_id}/git/status")
async def git_status(session_id: int, services: AgentServices = Depends(get_services)):
    status = await services.sessions.git_status(session_id)
    if status is None:
        raise HTTPException(status_code=500, detail="Could not read git status")
    return {
        "staged": [{"path": c.path, "change_type": c.change_type.value} for c in status.staged],
        "unstaged": [{"path": c.path, "change_type": c.change_type.value} for c in status.unstaged],
        "untracked": status.untracked,
        "has_changes": status.has_changes,
    }


@router.get("/sessions/{session_id}/git/file")
async def file_content(
    session_id: int,
    path: str,
    mode: GitFileMode = GitFileMode.WORKING,
    services: AgentServices = Depends(get_services),
):
    content = await services.sessions.file_content(session_id, path, mode)
    if content is None:
        raise HTTPException(status_code=404, detail=f"{path} not found ({mode.value})")
    return {"path": path, "mode": mode.value, "content": content}


def _bulk_response(result) -> BulkResponse:
    return BulkResponse(succeeded=result.succeeded, failed=result.failed, partial=result.partial)


@router.post("/sessions/{session_id}/git/stage", response_model=BulkResponse)
async def stage_files(
    session_id: int, body: PathsRequest, services: AgentServices = Depends(get_services)
):
    return _bulk_response(await services.sessions.stage_files(session_id, body.paths))


@router.post("/sessions/{session_id}/git/unstage", response_model=BulkResponse)
async def unstage_files(
    session_id: int, body: PathsRequest, services: AgentServices = Depends(get_services)
):
    return _bulk_response(await services.sessions.unstage_files(session_id, body.paths))


@router.post("/sessions/{session_id}/git/discard", response_model=BulkResponse)
async def discard_files(
    session_id: int, body: PathsRequest, services: AgentServices = Depends(get_services)
):
    return _bulk_response(await services.sessions.discard_files(session_id, body.paths))


@router.post("/sessions/{session_id}/git/commit", response_model=GitResultResponse)
async def commit(session_id: int, body: CommitRequest, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.sessions.commit(session_id, body.message))


# Deploy


@router.post("/sessions/{session_id}/deploy", response_model=DeployResponse)
async def deploy_to_environment(
    session_id: int, body: DeployRequest, services: AgentServices = Depends(get_services)
):
    report = await services.sessions.deploy_to_environment(
        session_id, body.environment_id, restart=body.restart
    )
    return DeployResponse(
        copied=report.copied, skipped=report.skipped, deleted=report.deleted, errors=report.errors
    )
