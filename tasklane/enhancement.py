"""AI task enhancement: rewrite a task, or split it into subtasks.

A request runs validation -> ownership check -> one model call (bounded by a
deadline) -> best-effort parse -> persistence. The parse step never fails:
malformed model output degrades to a deterministic fallback result. Timeouts
and model API errors are recorded on the task as ``enhancement_failed``
before they propagate, so a client watching the status stream always sees a
terminal state.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from tasklane.errors import (
    InternalError,
    NotFound,
    TaskLaneError,
    UpstreamFailure,
    ValidationError,
)
from tasklane.llm import ModelClient
from tasklane.models import (
    TITLE_MAX_LENGTH,
    EnhancementStatus,
    EnhancementType,
    Task,
    TaskPriority,
    TaskStatus,
)
from tasklane.repository import TaskRepository

logger = logging.getLogger(__name__)

ENHANCE_MAX_TOKENS = 500
SPLIT_MAX_TOKENS = 800

ENHANCE_SYSTEM_PROMPT = """You are a task management expert. Your job is to enhance task titles and \
descriptions to make them more specific, actionable, and clear.

Guidelines:
- Make titles more specific and actionable
- Add context and success criteria to descriptions
- Use clear, professional language
- Keep enhancements concise but informative
- Focus on clarity and actionability"""

SPLIT_SYSTEM_PROMPT = """You are a project management expert. Your job is to break down complex tasks \
into logical, manageable subtasks.

Guidelines:
- Break tasks into 3-6 logical subtasks
- Each subtask should be specific and actionable
- Consider natural workflow progression (research -> plan -> execute -> review)
- Provide realistic effort estimates
- Assign appropriate priority levels
- Use clear, descriptive titles
- Include relevant tags when appropriate"""

DEFAULT_ENHANCEMENT_NOTES = "Task enhanced for clarity and actionability"
FALLBACK_ENHANCEMENT_NOTES = "Task enhanced using AI (parsing failed, using raw response)"
DEFAULT_SPLIT_REASONING = "Task broken down into logical subtasks"
FALLBACK_SPLIT_REASONING = (
    "Automatic splitting failed; a default breakdown into basic phases was used"
)
DEFAULT_EFFORT = "Not estimated"
PRIORITY_VALUES = frozenset(p.value for p in TaskPriority)

FALLBACK_SUBTASKS: tuple[dict[str, Any], ...] = (
    {
        "title": "Research and Planning",
        "description": "Initial research and planning phase",
        "estimated_effort": "2-3 hours",
        "priority": "medium",
        "tags": ["planning"],
    },
    {
        "title": "Implementation",
        "description": "Main implementation work",
        "estimated_effort": "4-8 hours",
        "priority": "high",
        "tags": ["execution"],
    },
    {
        "title": "Review and Testing",
        "description": "Final review and testing",
        "estimated_effort": "1-2 hours",
        "priority": "medium",
        "tags": ["review"],
    },
)


# ─── Prompts ────────────────────────────────────────────────────────


def _describe_task(task: Task) -> str:
    lines = [f'Task Title: "{task.title}"']
    if task.description:
        lines.append(f'Task Description: "{task.description}"')
    else:
        lines.append("No description provided")
    return "\n".join(lines)


def build_enhance_prompt(task: Task) -> str:
    return f"""Please enhance the following task:

{_describe_task(task)}

Enhancement Type: enhance

Please provide your response in the following JSON format:
{{
  "enhanced_title": "Enhanced, more specific title",
  "enhanced_description": "Enhanced description with more context and clarity",
  "enhancement_notes": "Brief explanation of what was improved"
}}

Focus on making the task more specific, actionable, and clear."""


def build_split_prompt(task: Task) -> str:
    return f"""Please break down the following complex task into logical subtasks:

{_describe_task(task)}

Please provide your response in the following JSON format:
{{
  "subtasks": [
    {{
      "title": "Subtask title",
      "description": "Clear description of what needs to be done",
      "estimated_effort": "Realistic time estimate (e.g., '2-3 hours', '1 day')",
      "priority": "low|medium|high",
      "tags": ["tag1", "tag2"]
    }}
  ],
  "split_reasoning": "Brief explanation of why this breakdown makes sense"
}}

Break this into 3-6 logical subtasks that follow a natural workflow progression."""


# ─── Parsing ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Parsed:
    """The model's reply contained the JSON object we asked for."""
    data: dict[str, Any]


@dataclass(frozen=True)
class Fallback:
    """The reply was unusable; ``data`` is the deterministic substitute."""
    data: dict[str, Any]
    reason: str


ParseResult = Union[Parsed, Fallback]


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span in ``text``, or None.

    Braces inside JSON string literals are ignored, so a title such as
    ``"Fix {placeholder} rendering"`` does not end the span early.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def _load_reply_object(text: str) -> tuple[Optional[dict[str, Any]], str]:
    span = extract_json_object(text)
    if span is None:
        return None, "no JSON object found in reply"
    try:
        return json.loads(span), ""
    except RecursionError:
        return None, "reply JSON nested too deeply"
    except json.JSONDecodeError as exc:
        return None, f"invalid JSON in reply: {exc.msg}"


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _clip_title(title: str) -> str:
    return title[:TITLE_MAX_LENGTH].rstrip()


def enhancement_fallback(raw: str) -> dict[str, Any]:
    first_line = raw.split("\n", 1)[0].strip()
    return {
        "enhanced_title": _clip_title(f"[Enhanced] {first_line or 'Task'}"),
        "enhanced_description": raw,
        "enhancement_notes": FALLBACK_ENHANCEMENT_NOTES,
    }


def parse_enhancement_reply(raw: str) -> ParseResult:
    """Parse an ``enhance`` reply. Never raises."""
    obj, reason = _load_reply_object(raw)
    if obj is not None:
        title = _clip_title(_clean_str(obj.get("enhanced_title")))
        if title:
            return Parsed({
                "enhanced_title": title,
                "enhanced_description": _clean_str(obj.get("enhanced_description")),
                "enhancement_notes": _clean_str(obj.get("enhancement_notes"))
                or DEFAULT_ENHANCEMENT_NOTES,
            })
        reason = "reply has no enhanced_title"
    return Fallback(enhancement_fallback(raw), reason)


def _normalize_subtask(item: Any) -> Optional[dict[str, Any]]:
    if not isinstance(item, dict):
        return None
    title = _clip_title(_clean_str(item.get("title")))
    if not title:
        return None
    priority = item.get("priority")
    if not isinstance(priority, str) or priority not in PRIORITY_VALUES:
        priority = TaskPriority.medium.value
    tags = item.get("tags")
    if not isinstance(tags, list):
        tags = []
    return {
        "title": title,
        "description": _clean_str(item.get("description")),
        "estimated_effort": _clean_str(item.get("estimated_effort")) or DEFAULT_EFFORT,
        "priority": priority,
        "tags": [str(tag) for tag in tags],
    }


def split_fallback() -> dict[str, Any]:
    return {
        "subtasks": [dict(subtask, tags=list(subtask["tags"])) for subtask in FALLBACK_SUBTASKS],
        "split_reasoning": FALLBACK_SPLIT_REASONING,
    }


def parse_split_reply(raw: str) -> ParseResult:
    """Parse a ``split`` reply. Never raises."""
    obj, reason = _load_reply_object(raw)
    if obj is not None:
        items = obj.get("subtasks")
        subtasks = [_normalize_subtask(item) for item in items] if isinstance(items, list) else []
        if subtasks and all(subtask is not None for subtask in subtasks):
            return Parsed({
                "subtasks": subtasks,
                "split_reasoning": _clean_str(obj.get("split_reasoning"))
                or DEFAULT_SPLIT_REASONING,
            })
        reason = "reply has no usable subtasks"
    return Fallback(split_fallback(), reason)


# ─── Orchestration ──────────────────────────────────────────────────


@dataclass
class EnhanceOutcome:
    id: str
    title: str
    original_title: str
    description: Optional[str]
    enhanced_title: str
    enhanced_description: Optional[str]
    ai_enhancement_notes: str
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "original_title": self.original_title,
            "description": self.description,
            "enhanced_title": self.enhanced_title,
            "enhanced_description": self.enhanced_description,
            "ai_enhancement_notes": self.ai_enhancement_notes,
            "used_fallback": self.used_fallback,
        }


@dataclass
class SplitOutcome:
    parent_task_id: str
    subtasks: list[Task] = field(default_factory=list)
    split_reasoning: str = ""
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "parent_task_id": self.parent_task_id,
            "subtasks": [task.model_dump(mode="json") for task in self.subtasks],
            "split_reasoning": self.split_reasoning,
            "used_fallback": self.used_fallback,
        }


EnhancementOutcome = Union[EnhanceOutcome, SplitOutcome]


class EnhancementOrchestrator:
    """Runs one enhancement attempt per call.

    Args:
        repository: Owner-scoped task storage.
        model: Client for the hosted model API.
        timeout_seconds: Deadline for the model call.
    """

    def __init__(
        self,
        repository: TaskRepository,
        model: ModelClient,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._repository = repository
        self._model = model
        self._timeout = timeout_seconds

    async def enhance(
        self, task_id: str, owner_id: str, mode: Union[EnhancementType, str]
    ) -> EnhancementOutcome:
        """Enhance or split the task ``task_id`` owned by ``owner_id``.

        Raises:
            ValidationError: If ``mode`` is unknown or the task cannot take
                children without exceeding the nesting limit.
            NotFound: If the task does not exist or belongs to someone else.
            UpstreamFailure: If the model call times out or fails; the task is
                marked ``enhancement_failed`` first.
            InternalError: If applying the result fails for any other reason;
                the task is marked ``enhancement_failed`` first.
        """
        try:
            mode = EnhancementType(mode)
        except ValueError:
            raise ValidationError(
                "Validation failed: enhancement_type must be 'enhance' or 'split'"
            ) from None

        task = await asyncio.to_thread(self._repository.get, task_id, owner_id)
        if mode is EnhancementType.split:
            await asyncio.to_thread(self._repository.ensure_can_have_children, task_id, owner_id)

        if mode is EnhancementType.enhance:
            system, prompt = ENHANCE_SYSTEM_PROMPT, build_enhance_prompt(task)
            max_tokens = ENHANCE_MAX_TOKENS
        else:
            system, prompt = SPLIT_SYSTEM_PROMPT, build_split_prompt(task)
            max_tokens = SPLIT_MAX_TOKENS

        logger.info("Enhancement started: task=%s mode=%s", task_id, mode.value)
        raw = await self._call_model(task_id, owner_id, system, prompt, max_tokens)

        try:
            if mode is EnhancementType.enhance:
                return await self._apply_enhancement(task, owner_id, raw)
            return await self._apply_split(task, owner_id, raw)
        except TaskLaneError as exc:
            await self._record_failure(task_id, owner_id, f"AI enhancement failed: {exc.message}")
            raise
        except Exception as exc:
            logger.exception("Failed to apply enhancement for task %s", task_id)
            await self._record_failure(
                task_id, owner_id, "AI enhancement failed: could not save the result"
            )
            raise InternalError("Failed to update enhanced task") from exc

    async def _call_model(
        self, task_id: str, owner_id: str, system: str, prompt: str, max_tokens: int
    ) -> str:
        try:
            return await asyncio.wait_for(
                self._model.complete(system, prompt, max_tokens), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            note = f"AI enhancement timed out after {self._timeout:g} seconds"
            logger.warning("Enhancement timed out: task=%s", task_id)
            await self._record_failure(task_id, owner_id, note)
            raise UpstreamFailure(note, status_code=504, error="Gateway Timeout") from None
        except UpstreamFailure as exc:
            await self._record_failure(task_id, owner_id, f"AI enhancement failed: {exc.message}")
            raise

    async def _apply_enhancement(self, task: Task, owner_id: str, raw: str) -> EnhanceOutcome:
        result = parse_enhancement_reply(raw)
        if isinstance(result, Fallback):
            logger.warning(
                "Enhancement reply unparseable for task %s (%s); using raw text",
                task.id,
                result.reason,
            )
        data = result.data

        updated = await asyncio.to_thread(
            self._repository.set_fields,
            task.id,
            owner_id,
            {
                "title": data["enhanced_title"],
                "description": data["enhanced_description"] or task.description,
                "ai_enhanced_title": data["enhanced_title"],
                "ai_enhanced_description": data["enhanced_description"],
                "ai_enhancement_notes": data["enhancement_notes"],
                "ai_enhancement_status": EnhancementStatus.enhanced,
            },
        )
        logger.info("Enhancement completed: task=%s fallback=%s", task.id, isinstance(result, Fallback))
        return EnhanceOutcome(
            id=updated.id,
            title=updated.title,
            original_title=task.title,
            description=updated.description,
            enhanced_title=data["enhanced_title"],
            enhanced_description=data["enhanced_description"],
            ai_enhancement_notes=data["enhancement_notes"],
            used_fallback=isinstance(result, Fallback),
        )

    async def _apply_split(self, task: Task, owner_id: str, raw: str) -> SplitOutcome:
        result = parse_split_reply(raw)
        if isinstance(result, Fallback):
            logger.warning(
                "Split reply unparseable for task %s (%s); using default breakdown",
                task.id,
                result.reason,
            )
        data = result.data

        children = [
            {
                "title": subtask["title"],
                "description": subtask["description"],
                "estimated_effort": subtask["estimated_effort"],
                "priority": TaskPriority(subtask["priority"]),
                "tags": subtask["tags"],
                "status": TaskStatus.not_started,
            }
            for subtask in data["subtasks"]
        ]
        created = await asyncio.to_thread(
            self._repository.create_children, task.id, owner_id, children
        )
        await asyncio.to_thread(
            self._repository.set_fields,
            task.id,
            owner_id,
            {
                "status": TaskStatus.in_progress,
                "ai_enhancement_status": EnhancementStatus.enhanced,
                "ai_enhancement_notes": f"Task split into {len(created)} subtasks using AI",
            },
        )
        logger.info(
            "Split completed: task=%s subtasks=%d fallback=%s",
            task.id,
            len(created),
            isinstance(result, Fallback),
        )
        return SplitOutcome(
            parent_task_id=task.id,
            subtasks=created,
            split_reasoning=data["split_reasoning"],
            used_fallback=isinstance(result, Fallback),
        )

    async def _record_failure(self, task_id: str, owner_id: str, note: str) -> None:
        try:
            await asyncio.to_thread(
                self._repository.set_fields,
                task_id,
                owner_id,
                {
                    "ai_enhancement_status": EnhancementStatus.enhancement_failed,
                    "ai_enhancement_notes": note,
                },
            )
        except (NotFound, SQLAlchemyError):
            logger.exception("Could not record enhancement failure for task %s", task_id)
