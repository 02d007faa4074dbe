"""
Session/task continuity for remote agents.

A remote agent conversation is correlated by a *task id* issued by the agent and a *context id*
(our thread id).  Per thread the tracker walks this state machine:

    NO_TASK --(task / message with taskId)--> OPEN(task_id, context_id)
    OPEN --(final status-update, state != input-required)--> NO_TASK

All mutable state lives in a :class:`TaskStore`.  Writers for one thread are serialised by a
per-thread :class:`asyncio.Lock`, held by the caller for the whole remote exchange via
:meth:`TaskTracker.session`.
"""

import asyncio
import logging
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Set,
)

from pydantic import BaseModel

logger = logging.getLogger(__name__)

INPUT_REQUIRED = "input-required"
TERMINAL_STATES = frozenset({"completed", "canceled", "failed", "rejected"})


class RemoteEventKind(str, Enum):
    STATUS_UPDATE = "status-update"
    MESSAGE = "message"
    TASK = "task"
    UNKNOWN = "unknown"


class RemoteEvent(BaseModel):
    """Inbound remote protocol event, reduced to what the engine needs."""

    kind: RemoteEventKind
    task_id: Optional[str] = None
    context_id: Optional[str] = None
    state: Optional[str] = None
    final: bool = False
    text: str = ""


class OpenTask(BaseModel):
    task_id: str
    context_id: Optional[str] = None


def _obj(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _text_parts(message: Any) -> str:
    parts = _obj(message).get("parts")
    if not isinstance(parts, list):
        return ""
    texts: List[str] = [
        _str(part.get("text")) or ""
        for part in parts
        if isinstance(part, dict) and part.get("kind", part.get("type")) == "text"
    ]
    return "\n".join(t for t in texts if t)


class TaskStore:
    """Thread -> open remote task, plus the set of canceled task ids."""

    def __init__(self) -> None:
        self._tasks: Dict[str, OpenTask] = {}
        self._canceled: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, thread_id: str) -> OpenTask | None:
        return self._tasks.get(thread_id)

    def set(self, thread_id: str, task_id: str, context_id: str | None = None) -> None:
        self._tasks[thread_id] = OpenTask(task_id=task_id, context_id=context_id)

    def clear(self, thread_id: str) -> None:
        self._tasks.pop(thread_id, None)

    def add_canceled(self, task_id: str) -> None:
        self._canceled.add(task_id)

    def discard_canceled(self, task_id: str) -> None:
        self._canceled.discard(task_id)

    def is_canceled(self, task_id: str) -> bool:
        return task_id in self._canceled

    def lock(self, thread_id: str) -> asyncio.Lock:
        # setdefault is atomic with respect to other coroutines on the loop
        return self._locks.setdefault(thread_id, asyncio.Lock())


class TaskTracker:
    """Applies remote protocol events to a :class:`TaskStore` and exposes cancellation."""

    def __init__(self, store: TaskStore | None = None):
        self.store = store or TaskStore()

    @staticmethod
    def classify(event: Any) -> RemoteEvent:
        """
        Reduce a raw protocol event to a :class:`RemoteEvent`; never raises.

        A non-object event is ``UNKNOWN``.  Fields of the wrong type inside a known event are
        treated as absent.
        """
        if not isinstance(event, dict):
            return RemoteEvent(kind=RemoteEventKind.UNKNOWN)
        kind = event.get("kind")
        if kind == RemoteEventKind.STATUS_UPDATE.value:
            status = _obj(event.get("status"))
            return RemoteEvent(
                kind=RemoteEventKind.STATUS_UPDATE,
                task_id=_str(event.get("taskId")),
                context_id=_str(event.get("contextId")),
                state=_str(status.get("state")),
                final=event.get("final") is True,
                text=_text_parts(status.get("message")),
            )
        if kind == RemoteEventKind.MESSAGE.value:
            return RemoteEvent(
                kind=RemoteEventKind.MESSAGE,
                task_id=_str(event.get("taskId")),
                context_id=_str(event.get("contextId")),
                text=_text_parts(event),
            )
        if kind == RemoteEventKind.TASK.value:
            status = _obj(event.get("status"))
            return RemoteEvent(
                kind=RemoteEventKind.TASK,
                task_id=_str(event.get("id")),
                context_id=_str(event.get("contextId")),
                state=_str(status.get("state")),
                text=_text_parts(status.get("message")),
            )
        return RemoteEvent(kind=RemoteEventKind.UNKNOWN)

    def observe(self, thread_id: str, event: Dict[str, Any]) -> RemoteEvent:
        """Classify *event* and apply the resulting transition for *thread_id*."""
        remote = self.classify(event)
        current = self.store.get(thread_id)

        if remote.kind is RemoteEventKind.STATUS_UPDATE:
            if remote.final and remote.state != INPUT_REQUIRED:
                self.store.clear(thread_id)
        elif remote.kind is RemoteEventKind.MESSAGE:
            if remote.task_id and (current is None or current.task_id != remote.task_id):
                self.store.set(thread_id, remote.task_id, remote.context_id)
        elif remote.kind is RemoteEventKind.TASK:
            if remote.task_id and remote.state in TERMINAL_STATES:
                self.store.clear(thread_id)
            elif remote.task_id and (current is None or current.task_id != remote.task_id):
                self.store.set(thread_id, remote.task_id, remote.context_id)
        else:
            logger.warning("Unknown remote event ignored: %s", event)
        return remote

    def current(self, thread_id: str) -> OpenTask | None:
        """The open task for *thread_id*, if any."""
        return self.store.get(thread_id)

    def session(self, thread_id: str) -> asyncio.Lock:
        """Lock to hold (``async with``) for the whole remote exchange on *thread_id*."""
        return self.store.lock(thread_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel(self, task_id: str) -> None:
        logger.info("Cancel requested for task %s", task_id)
        self.store.add_canceled(task_id)

    def cancel_thread(self, thread_id: str) -> str | None:
        """Cancel the open task of *thread_id*; returns its id or ``None`` when nothing is open."""
        current = self.store.get(thread_id)
        if current is None:
            return None
        self.cancel(current.task_id)
        return current.task_id

    def is_canceled(self, task_id: str | None) -> bool:
        return bool(task_id) and self.store.is_canceled(task_id)

    def finish_cancel(self, thread_id: str, task_id: str) -> None:
        """Forget *task_id* after its cancellation has been delivered."""
        current = self.store.get(thread_id)
        if current is not None and current.task_id == task_id:
            self.store.clear(thread_id)
        self.store.discard_canceled(task_id)
