"""Task endpoints: owner-scoped CRUD, hierarchy reads and AI enhancement."""

import asyncio
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from tasklane.auth import require_principal
from tasklane.config import Settings, get_settings
from tasklane.deps import get_orchestrator, get_repository
from tasklane.enhancement import EnhancementOrchestrator, SplitOutcome
from tasklane.identity import Principal
from tasklane.models import (
    EnhancementRequest,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskStatusUpdate,
    TaskUpdate,
    task_with_children,
)
from tasklane.repository import TaskRepository
from tasklane.status_channel import StatusChannel, sse_headers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("/")
def list_tasks(
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    parent_task_id: Optional[UUID] = None,
    root_only: bool = False,
    limit: int = Query(default=200, ge=1, le=500),
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    """List the caller's tasks, optionally filtered by status, priority or parent."""
    tasks = repository.list_tasks(
        principal.id,
        status=status,
        priority=priority,
        parent_task_id=str(parent_task_id) if parent_task_id else None,
        root_only=root_only,
        limit=limit,
    )
    return {"tasks": tasks}


@router.get("/{task_id}")
def get_task(
    task_id: UUID,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    """Get a single task by ID."""
    return {"task": repository.get(str(task_id), principal.id)}


@router.post("/", status_code=201)
def create_task(
    body: TaskCreate,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    """Create a new task owned by the caller."""
    task = repository.create(principal.id, body)
    logger.info("Task %s created by %s", task.id, principal.id)
    return {"message": "Task created successfully", "task": task}


@router.put("/{task_id}")
def update_task(
    task_id: UUID,
    body: TaskUpdate,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    """Update an existing task. Only provided fields are changed."""
    task = repository.update(str(task_id), principal.id, body)
    return {"message": "Task updated successfully", "task": task}


@router.delete("/{task_id}")
def delete_task(
    task_id: UUID,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    """Delete a task. Its children are kept and become top-level tasks."""
    repository.delete(str(task_id), principal.id)
    return {"message": "Task deleted successfully"}


@router.patch("/{task_id}/status")
def update_task_status(
    task_id: UUID,
    body: TaskStatusUpdate,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    task = repository.set_status(str(task_id), principal.id, body.status)
    return {"message": "Task status updated successfully", "task": task}


@router.get("/{task_id}/children")
def list_children(
    task_id: UUID,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    children = repository.children(str(task_id), principal.id)
    return {"children": children, "parent_task_id": str(task_id)}


@router.get("/{task_id}/with-children")
def get_task_with_children(
    task_id: UUID,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
):
    task = repository.get(str(task_id), principal.id)
    children = repository.children(task.id, principal.id)
    return {"task": task_with_children(task, children)}


@router.post("/{task_id}/enhance-ai")
async def enhance_task(
    task_id: UUID,
    body: EnhancementRequest,
    principal: Principal = Depends(require_principal),
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
):
    """Rewrite the task with AI, or split it into AI-proposed subtasks."""
    outcome = await orchestrator.enhance(str(task_id), principal.id, body.enhancement_type)
    if isinstance(outcome, SplitOutcome):
        message = f"Task split into {len(outcome.subtasks)} subtasks"
    else:
        message = "Task enhanced successfully with AI"
    return {"success": True, "message": message, "data": outcome.to_dict()}


@router.get("/{task_id}/enhance-ai/status")
async def enhancement_status_stream(
    task_id: UUID,
    request: Request,
    principal: Principal = Depends(require_principal),
    repository: TaskRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    """Stream the task's enhancement status as server-sent events."""
    tid = str(task_id)

    async def read_status():
        return await asyncio.to_thread(repository.get_enhancement_status, tid, principal.id)

    channel = StatusChannel(
        tid,
        read_status,
        request.is_disconnected,
        poll_interval=settings.status_poll_interval_seconds,
        timeout=settings.status_stream_timeout_seconds,
    )
    return StreamingResponse(
        channel.events(), media_type="text/event-stream", headers=sse_headers()
    )
