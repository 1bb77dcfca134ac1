"""Server-sent event stream that follows a task's AI enhancement status.

The channel polls the stored ``ai_enhancement_status`` on a fixed interval
and forwards each reading until the status becomes terminal, the connection
times out, or the client goes away. Every connection ends with exactly one
of ``complete``, ``error`` or ``timeout`` unless the client disconnects first.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from tasklane.errors import NotFound
from tasklane.models import EnhancementStatus

logger = logging.getLogger(__name__)

_STATUS_PROGRESS: dict[str, tuple[int, str]] = {
    EnhancementStatus.not_enhanced.value: (0, "Ready for enhancement"),
    EnhancementStatus.enhanced.value: (100, "Enhancement completed successfully"),
    EnhancementStatus.enhancement_failed.value: (0, "Enhancement failed"),
}
_IN_PROGRESS = (50, "Enhancement in progress...")

TIMEOUT_MESSAGE = "Connection timed out. Reconnect to continue monitoring."


class ChannelState(str, Enum):
    connected = "connected"
    monitoring = "monitoring"
    completed = "completed"
    errored = "errored"
    timed_out = "timed_out"
    disconnected = "disconnected"


TERMINAL_STATES = frozenset(
    {ChannelState.completed, ChannelState.errored, ChannelState.timed_out, ChannelState.disconnected}
)


def format_event(event: str, data: dict[str, Any]) -> str:
    """Render one SSE frame: ``event:`` line, ``data:`` line, blank line."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def status_payload(status: str) -> dict[str, Any]:
    progress, message = _STATUS_PROGRESS.get(status, _IN_PROGRESS)
    return {"status": status, "progress": progress, "message": message}


def sse_headers() -> dict[str, str]:
    return {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class StatusChannel:
    """One monitoring connection for one task.

    Args:
        task_id: Task being watched; echoed in the ``connected`` event.
        read_status: Coroutine returning the current enhancement status.
            Raising ``NotFound`` means the caller cannot see the task.
        is_disconnected: Coroutine telling whether the client went away.
        poll_interval: Seconds between status reads.
        timeout: Seconds after which the channel gives up.
    """

    def __init__(
        self,
        task_id: str,
        read_status: Callable[[], Awaitable[EnhancementStatus]],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        *,
        poll_interval: float = 2.0,
        timeout: float = 120.0,
    ) -> None:
        self.task_id = task_id
        self.state = ChannelState.connected
        self._read_status = read_status
        self._is_disconnected = is_disconnected
        self._poll_interval = poll_interval
        self._timeout = timeout

    async def events(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        try:
            yield format_event("connected", {"status": "connected", "task_id": self.task_id})

            frames = await self._poll()
            for frame in frames:
                yield frame
            if self.state in TERMINAL_STATES:
                return
            self.state = ChannelState.monitoring

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.state = ChannelState.timed_out
                    yield format_event("timeout", {"status": "timeout", "message": TIMEOUT_MESSAGE})
                    return
                await asyncio.sleep(min(self._poll_interval, remaining))
                if self._is_disconnected is not None and await self._is_disconnected():
                    self.state = ChannelState.disconnected
                    logger.info("Client disconnected from status stream for task %s", self.task_id)
                    return
                if loop.time() >= deadline:
                    continue
                frames = await self._poll()
                for frame in frames:
                    yield frame
                if self.state in TERMINAL_STATES:
                    return
        finally:
            if self.state not in TERMINAL_STATES:
                # Generator closed by the server when the client dropped.
                self.state = ChannelState.disconnected
            logger.debug("Status stream for task %s closed in state %s", self.task_id, self.state.value)

    async def _poll(self) -> list[str]:
        """Read the status once and return the frames to send for it."""
        try:
            status = await self._read_status()
        except NotFound:
            self.state = ChannelState.errored
            return [format_event("error", {"status": "error", "message": "Task not found"})]
        except Exception:
            logger.exception("Status read failed for task %s", self.task_id)
            self.state = ChannelState.errored
            return [format_event("error", {"status": "error", "message": "Failed to fetch task status"})]

        value = getattr(status, "value", status)
        frames = [format_event("status", status_payload(value))]
        if value == EnhancementStatus.enhanced.value:
            self.state = ChannelState.completed
            frames.append(format_event(
                "complete", {"status": "completed", "message": "AI enhancement completed successfully"}
            ))
        elif value == EnhancementStatus.enhancement_failed.value:
            self.state = ChannelState.errored
            frames.append(format_event("error", {"status": "error", "message": "AI enhancement failed"}))
        return frames
