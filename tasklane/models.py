"""Task model and the request schemas of the task API."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import field_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

TITLE_MAX_LENGTH = 200


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    not_started = "not_started"
    planning = "planning"
    in_progress = "in_progress"
    review = "review"
    testing = "testing"
    completed = "completed"
    on_hold = "on_hold"
    cancelled = "cancelled"
    deferred = "deferred"
    blocked = "blocked"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class EnhancementStatus(str, Enum):
    not_enhanced = "not_enhanced"
    enhanced = "enhanced"
    enhancement_failed = "enhancement_failed"


class EnhancementType(str, Enum):
    enhance = "enhance"
    split = "split"


class TaskBase(SQLModel):
    """Shared fields for create/update operations."""
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.not_started)
    priority: TaskPriority = Field(default=TaskPriority.medium)
    due_date: Optional[datetime] = Field(default=None)
    estimated_hours: Optional[int] = Field(default=None, ge=0)
    tags: Optional[list[str]] = Field(default=None, sa_column=Column(JSON))
    parent_task_id: Optional[str] = Field(
        default=None, foreign_key="tasks.id", ondelete="SET NULL", index=True
    )


class Task(TaskBase, table=True):
    """Task database table. ``user_id`` is fixed at creation."""
    __tablename__ = "tasks"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    estimated_effort: Optional[str] = Field(default=None)
    ai_enhanced_title: Optional[str] = Field(default=None)
    ai_enhanced_description: Optional[str] = Field(default=None)
    ai_enhancement_notes: Optional[str] = Field(default=None)
    ai_enhancement_status: EnhancementStatus = Field(default=EnhancementStatus.not_enhanced)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TaskCreate(TaskBase):
    """Schema for creating a task. Title is required, rest have defaults."""

    @field_validator("parent_task_id")
    @classmethod
    def validate_parent_id(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_task_id(v)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class TaskUpdate(SQLModel):
    """Schema for updating a task. All fields optional; ownership is not writable."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[int] = Field(default=None, ge=0)
    tags: Optional[list[str]] = None
    parent_task_id: Optional[str] = None

    @field_validator("parent_task_id")
    @classmethod
    def validate_parent_id(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_task_id(v)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class TaskStatusUpdate(SQLModel):
    status: TaskStatus


class EnhancementRequest(SQLModel):
    enhancement_type: EnhancementType


def _normalize_task_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise ValueError("parent_task_id must be a valid task id") from None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def task_with_children(task: Task, children: list[Task]) -> dict[str, Any]:
    """Serialize a task together with its direct children."""
    return {
        **task.model_dump(mode="json"),
        "children": [child.model_dump(mode="json") for child in children],
        "child_count": len(children),
    }
