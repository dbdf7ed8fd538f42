"""Workspace, environment and task definition endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...errors import WorkspaceNotFoundError
from ...models import Environment, ScriptType, TaskDefinition, TaskType, Workspace
from ...orchestration.services import AgentServices
from . import get_services
from .sessions import GitResultResponse

router = APIRouter()


class CreateWorkspaceRequest(BaseModel):
    name: str
    git_url: str
    environment_variables: dict[str, str] = Field(default_factory=dict)


class CreateEnvironmentRequest(BaseModel):
    name: str = Field(min_length=1, pattern=r"^[\w.-]+$")
    git_branch: str = "main"
    environment_variables: dict[str, str] = Field(default_factory=dict)


class CreateTaskRequest(BaseModel):
    name: str
    type: Optional[TaskType] = None
    working_directory: Optional[str] = None
    script_type: ScriptType = ScriptType.BASH
    script_content: str


def _require_workspace(services: AgentServices, workspace_id: int) -> Workspace:
    workspace = services.store.get_workspace(workspace_id)
    if workspace is None:
        raise WorkspaceNotFoundError(workspace_id)
    return workspace


# Workspaces


@router.post("/workspaces", response_model=Workspace, status_code=201)
async def create_workspace(
    body: CreateWorkspaceRequest, services: AgentServices = Depends(get_services)
):
    """Create a workspace and clone its repository."""
    return await services.workspaces.create_workspace(
        body.name, body.git_url, body.environment_variables
    )


@router.get("/workspaces", response_model=list[Workspace])
async def list_workspaces(services: AgentServices = Depends(get_services)):
    return services.store.list_workspaces()


@router.get("/workspaces/{workspace_id}", response_model=Workspace)
async def get_workspace(workspace_id: int, services: AgentServices = Depends(get_services)):
    return _require_workspace(services, workspace_id)


@router.post("/workspaces/{workspace_id}/initialize", response_model=GitResultResponse)
async def initialize_workspace(workspace_id: int, services: AgentServices = Depends(get_services)):
    """Clone the repository again if the workspace has no clone."""
    return GitResultResponse.from_result(await services.workspaces.initialize(workspace_id))


@router.delete("/workspaces/{workspace_id}")
async def delete_workspace(workspace_id: int, services: AgentServices = Depends(get_services)):
    if not await services.workspaces.delete_workspace(workspace_id):
        raise HTTPException(status_code=404, detail=f"Workspace {workspace_id} not found")
    return {"success": True}


# Environments


@router.post(
    "/workspaces/{workspace_id}/environments", response_model=Environment, status_code=201
)
async def create_environment(
    workspace_id: int,
    body: CreateEnvironmentRequest,
    services: AgentServices = Depends(get_services),
):
    """Create an environment and copy the workspace clone into it."""
    _require_workspace(services, workspace_id)
    return await services.environments.create_environment(
        workspace_id, body.name, body.git_branch, body.environment_variables
    )


@router.get("/workspaces/{workspace_id}/environments", response_model=list[Environment])
async def list_environments(workspace_id: int, services: AgentServices = Depends(get_services)):
    _require_workspace(services, workspace_id)
    return services.store.list_environments(workspace_id)


@router.post("/environments/{environment_id}/provision", response_model=GitResultResponse)
async def provision_environment(
    environment_id: int, services: AgentServices = Depends(get_services)
):
    return GitResultResponse.from_result(await services.environments.provision(environment_id))


@router.post("/environments/{environment_id}/reset", response_model=GitResultResponse)
async def reset_environment(environment_id: int, services: AgentServices = Depends(get_services)):
    return GitResultResponse.from_result(await services.environments.reset(environment_id))


@router.delete("/environments/{environment_id}")
async def delete_environment(environment_id: int, services: AgentServices = Depends(get_services)):
    if not await services.environments.delete_environment(environment_id):
        raise HTTPException(status_code=404, detail=f"Environment {environment_id} not found")
    return {"success": True}


# Task definitions


@router.post("/workspaces/{workspace_id}/tasks", response_model=TaskDefinition, status_code=201)
async def create_task(
    workspace_id: int, body: CreateTaskRequest, services: AgentServices = Depends(get_services)
):
    _require_workspace(services, workspace_id)
    return services.store.add_task(TaskDefinition(workspace_id=workspace_id, **body.model_dump()))


@router.get("/workspaces/{workspace_id}/tasks", response_model=list[TaskDefinition])
async def list_tasks(workspace_id: int, services: AgentServices = Depends(get_services)):
    _require_workspace(services, workspace_id)
    return services.store.list_tasks(workspace_id)
