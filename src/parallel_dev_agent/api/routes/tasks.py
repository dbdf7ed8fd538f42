"""Task execution endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ...models import ContextKind, TaskStatus, TaskType
from ...orchestration.services import AgentServices
from . import get_services

router = APIRouter()


class StartTaskResponse(BaseModel):
    execution_id: str


class ExecutionResponse(BaseModel):
    """Snapshot of one execution."""
    execution_id: str
    task_id: int
    status: TaskStatus
    output: Optional[str] = None


class TaskStatusResponse(BaseModel):
    task_id: int
    name: str
    type: Optional[TaskType] = None
    status: TaskStatus
    execution_id: Optional[str] = None


@router.post("/sessions/{session_id}/tasks/{task_id}/start", response_model=StartTaskResponse)
async def start_session_task(
    session_id: int, task_id: int, services: AgentServices = Depends(get_services)
):
    """Run a task in a session worktree."""
    try:
        execution_id = await services.task_execution.start_session_task(session_id, task_id)
    except FileNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StartTaskResponse(execution_id=execution_id)


@router.post(
    "/environments/{environment_id}/tasks/{task_id}/start", response_model=StartTaskResponse
)
async def start_environment_task(
    environment_id: int, task_id: int, services: AgentServices = Depends(get_services)
):
    """Run a task in an environment directory."""
    try:
        execution_id = await services.task_execution.start_environment_task(
            environment_id, task_id
        )
    except FileNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return StartTaskResponse(execution_id=execution_id)


@router.post("/executions/{execution_id}/stop")
async def stop_execution(execution_id: str, services: AgentServices = Depends(get_services)):
    if not await services.task_execution.stop_task(execution_id):
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return {"success": True}


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, services: AgentServices = Depends(get_services)):
    """Status of an execution; unknown handles report pending."""
    snapshot = services.processes.get_status(execution_id)
    return ExecutionResponse(
        execution_id=snapshot.execution_id,
        task_id=snapshot.task_id,
        status=snapshot.status,
        output=snapshot.output,
    )


@router.get("/executions/{execution_id}/output")
async def get_execution_output(execution_id: str, services: AgentServices = Depends(get_services)):
    output = services.processes.get_output(execution_id)
    if output is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return {"execution_id": execution_id, "output": output}


@router.get("/workspaces/{workspace_id}/tasks/status", response_model=list[TaskStatusResponse])
async def get_task_statuses(
    workspace_id: int,
    context_kind: ContextKind,
    context_id: int,
    services: AgentServices = Depends(get_services),
):
    """Every workspace task with its latest execution in a session or environment."""
    statuses = services.task_execution.get_task_statuses(workspace_id, context_kind, context_id)
    return [
        TaskStatusResponse(
            task_id=s.task_id,
            name=s.name,
            type=s.type,
            status=s.status,
            execution_id=s.execution_id,
        )
        for s in statuses
    ]
