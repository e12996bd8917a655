"""EventBus and job lifecycle events."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Job lifecycle transitions observable by collaborators."""

    JOB_CREATED = "job_created"
    JOB_CLAIMED = "job_claimed"
    JOB_PROGRESS = "job_progress"
    JOB_READY = "job_ready"
    JOB_FAILED = "job_failed"
    JOB_DELETED = "job_deleted"


@dataclass(frozen=True, slots=True)
class JobEvent:
    """Immutable record of a job transition.

    Attributes:
        event_type: The kind of transition.
        job_id: Id of the affected job.
        session_id: Session the job belongs to.
        processed_files: Progress counter at emit time, when known.
        total_files: Number of files the job will process, once counted.
        error_kind: Error category for ``JOB_FAILED``.
    """

    event_type: EventType
    job_id: str
    session_id: str
    processed_files: int | None = None
    total_files: int | None = None
    error_kind: str | None = None


class EventBus:
    """Fans job events out to listeners.

    Listeners may be plain callables or coroutine functions; they run one
    after another in registration order.  A listener that raises is logged
    and skipped, so observers can never fail the job they watch.
    """

    def __init__(self) -> None:
        self._listeners: defaultdict[EventType, list[Callable[..., Any]]] = defaultdict(list)

    def register(self, event_type: EventType, handler: Callable[..., Any]) -> None:
        self._listeners[event_type].append(handler)

    def unregister(self, event_type: EventType, handler: Callable[..., Any]) -> bool:
        """Drop the first registration of *handler*.  False if it was not registered."""
        listeners = self._listeners[event_type]
        if handler not in listeners:
            return False
        listeners.remove(handler)
        return True

    async def emit(self, event: JobEvent) -> None:
        for handler in list(self._listeners[event.event_type]):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.warning(
                    "Listener %r raised on %s for job %s",
                    handler,
                    event.event_type.value,
                    event.job_id,
                    exc_info=True,
                )

    @property
    def handler_count(self) -> int:
        return sum(map(len, self._listeners.values()))

    def clear(self) -> None:
        self._listeners.clear()
