"""Owner-scoped task persistence.

Every method takes the principal's id and filters on ``user_id``, so a task
owned by someone else is indistinguishable from a missing one.
"""

from typing import Any, Iterable, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from tasklane.errors import NotFound, ValidationError
from tasklane.models import (
    EnhancementStatus,
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    utcnow,
)

MAX_DEPTH = 3
NON_NULLABLE_FIELDS = frozenset({"title", "status", "priority"})


class TaskRepository:
    """Thin per-operation access to the ``tasks`` table.

    Args:
        engine: SQLAlchemy engine the sessions are opened against.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    # -- reads ---------------------------------------------------------------

    def list_tasks(
        self,
        owner_id: str,
        *,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        parent_task_id: Optional[str] = None,
        root_only: bool = False,
        limit: int = 200,
    ) -> list[Task]:
        """List the owner's tasks, soonest due first, then newest first."""
        statement = select(Task).where(Task.user_id == owner_id)
        if status is not None:
            statement = statement.where(Task.status == status)
        if priority is not None:
            statement = statement.where(Task.priority == priority)
        if parent_task_id is not None:
            statement = statement.where(Task.parent_task_id == parent_task_id)
        elif root_only:
            statement = statement.where(Task.parent_task_id.is_(None))
        statement = statement.order_by(
            Task.due_date.asc().nulls_last(), Task.created_at.desc()
        ).limit(limit)
        with self._session() as session:
            return list(session.exec(statement).all())

    def get(self, task_id: str, owner_id: str) -> Task:
        with self._session() as session:
            return self._get_owned(session, task_id, owner_id)

    def children(self, task_id: str, owner_id: str) -> list[Task]:
        """Direct children of a task, oldest first."""
        statement = (
            select(Task)
            .where(Task.parent_task_id == task_id, Task.user_id == owner_id)
            .order_by(Task.created_at.asc())
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def get_enhancement_status(self, task_id: str, owner_id: str) -> EnhancementStatus:
        statement = select(Task.ai_enhancement_status).where(
            Task.id == task_id, Task.user_id == owner_id
        )
        with self._session() as session:
            status = session.exec(statement).first()
        if status is None:
            raise NotFound("Task not found")
        return EnhancementStatus(status)

    # -- writes --------------------------------------------------------------

    def create(self, owner_id: str, body: TaskCreate) -> Task:
        with self._session() as session:
            if body.parent_task_id is not None:
                self._check_parent(session, None, body.parent_task_id, owner_id)
            task = Task.model_validate(body, update={"user_id": owner_id})
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def create_children(
        self, parent_id: str, owner_id: str, children: Iterable[dict[str, Any]]
    ) -> list[Task]:
        """Insert a batch of child tasks under ``parent_id`` in one transaction."""
        with self._session() as session:
            self._check_parent(session, None, parent_id, owner_id)
            created = [
                Task(**fields, user_id=owner_id, parent_task_id=parent_id)
                for fields in children
            ]
            session.add_all(created)
            session.commit()
            for task in created:
                session.refresh(task)
            return created

    def update(self, task_id: str, owner_id: str, body: TaskUpdate) -> Task:
        """Apply a partial update. Only provided fields are changed."""
        changes = body.model_dump(exclude_unset=True)
        for key in NON_NULLABLE_FIELDS & changes.keys():
            if changes[key] is None:
                raise ValidationError(f"{key} cannot be null")
        with self._session() as session:
            task = self._get_owned(session, task_id, owner_id)
            new_parent = changes.get("parent_task_id")
            if new_parent is not None and new_parent != task.parent_task_id:
                self._check_parent(session, task.id, new_parent, owner_id)
            return self._apply(session, task, changes)

    def set_status(self, task_id: str, owner_id: str, status: TaskStatus) -> Task:
        with self._session() as session:
            task = self._get_owned(session, task_id, owner_id)
            return self._apply(session, task, {"status": status})

    def set_fields(self, task_id: str, owner_id: str, fields: dict[str, Any]) -> Task:
        """Overwrite arbitrary columns; used by the enhancement workflow."""
        with self._session() as session:
            task = self._get_owned(session, task_id, owner_id)
            return self._apply(session, task, fields)

    def delete(self, task_id: str, owner_id: str) -> None:
        """Delete a task. The foreign key nulls out its children's parent link."""
        with self._session() as session:
            task = self._get_owned(session, task_id, owner_id)
            session.delete(task)
            session.commit()

    # -- hierarchy -----------------------------------------------------------

    def ensure_can_have_children(self, task_id: str, owner_id: str) -> None:
        """Raise ``ValidationError`` if a child of this task would nest too deep."""
        with self._session() as session:
            self._check_parent(session, None, task_id, owner_id)

    def _check_parent(
        self,
        session: Session,
        task_id: Optional[str],
        parent_id: str,
        owner_id: str,
    ) -> None:
        parent = session.exec(
            select(Task).where(Task.id == parent_id, Task.user_id == owner_id)
        ).first()
        if parent is None:
            raise ValidationError("Parent task not found")
        if task_id is not None and parent_id == task_id:
            raise ValidationError("A task cannot be its own parent")

        level = 1
        current = parent
        while current.parent_task_id is not None and level < MAX_DEPTH:
            if task_id is not None and current.parent_task_id == task_id:
                raise ValidationError("A task cannot be nested under its own subtask")
            current = session.get(Task, current.parent_task_id)
            if current is None:
                break
            level += 1

        # A moved task brings its own subtree along.
        height = self._subtree_height(session, task_id) if task_id is not None else 1
        if level + height > MAX_DEPTH:
            raise ValidationError(f"Task nesting depth cannot exceed {MAX_DEPTH} levels")

    @staticmethod
    def _subtree_height(session: Session, task_id: str) -> int:
        height = 1
        frontier = [task_id]
        while height <= MAX_DEPTH:
            frontier = list(
                session.exec(select(Task.id).where(Task.parent_task_id.in_(frontier))).all()
            )
            if not frontier:
                break
            height += 1
        return height

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _get_owned(session: Session, task_id: str, owner_id: str) -> Task:
        task = session.exec(
            select(Task).where(Task.id == task_id, Task.user_id == owner_id)
        ).first()
        if task is None:
            raise NotFound("Task not found")
        return task

    @staticmethod
    def _apply(session: Session, task: Task, changes: dict[str, Any]) -> Task:
        for key, value in changes.items():
            setattr(task, key, value)
        task.updated_at = utcnow()
        session.add(task)
        session.commit()
        session.refresh(task)
        return task
