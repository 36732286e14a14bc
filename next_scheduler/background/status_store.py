"""
In-memory status store for background task sets.

Holds one TaskSet per appointment. Writers are the orchestrator's task
boundaries; readers are diagnostics. All access goes through a single lock,
so the store can be shared between the event loop and worker threads.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from .errors import ErrorClassification

logger = logging.getLogger(__name__)


class TaskName(str, Enum):
    SELLER_CALENDAR = "sellerCalendar"
    BUYER_CALENDAR = "buyerCalendar"
    MEETING_LINK = "meetLink"
    EMAIL = "email"


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATES = frozenset({TaskState.SUCCESS, TaskState.FAILED})

# Pending -> Failed covers tasks that never started before the deadline or shutdown
_ALLOWED_TRANSITIONS = {
    TaskState.PENDING: frozenset({TaskState.RUNNING, TaskState.FAILED}),
    TaskState.RUNNING: TERMINAL_STATES,
    TaskState.SUCCESS: frozenset(),
    TaskState.FAILED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TaskRecord:
    name: TaskName
    appointment_id: str
    state: TaskState = TaskState.PENDING
    detail: Dict[str, Any] = field(default_factory=dict)
    error_classification: Optional[ErrorClassification] = None
    error_message: Optional[str] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class TaskSet:
    appointment_id: str
    tasks: Dict[TaskName, TaskRecord]
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: float = 0.0

    @property
    def is_complete(self) -> bool:
        return all(record.is_terminal for record in self.tasks.values())


class TaskSetExistsError(Exception):
    """A TaskSet is already registered for this appointment"""


class StatusStore:
    def __init__(self, retention_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._task_sets: Dict[str, TaskSet] = {}

    def create(self, appointment_id: str, task_names: Iterable[TaskName]) -> TaskSet:
        """Register a new TaskSet with every task Pending"""
        with self._lock:
            self._evict_if_expired(appointment_id)
            if appointment_id in self._task_sets:
                raise TaskSetExistsError(f"Task set already exists for appointment {appointment_id}")
            task_set = self._new_task_set(appointment_id, task_names)
            self._task_sets[appointment_id] = task_set
            return copy.deepcopy(task_set)

    def replace(self, appointment_id: str, task_names: Iterable[TaskName]) -> TaskSet:
        """Swap a finished TaskSet for a fresh one; an in-flight set is never replaced"""
        with self._lock:
            self._evict_if_expired(appointment_id)
            existing = self._task_sets.get(appointment_id)
            if existing and not existing.is_complete:
                raise TaskSetExistsError(f"Task set for appointment {appointment_id} is still running")
            task_set = self._new_task_set(appointment_id, task_names)
            self._task_sets[appointment_id] = task_set
            return copy.deepcopy(task_set)

    def get(self, appointment_id: str) -> Optional[TaskSet]:
        """Return a copy of the TaskSet, or None if never dispatched or evicted"""
        with self._lock:
            self._evict_if_expired(appointment_id)
            task_set = self._task_sets.get(appointment_id)
            return copy.deepcopy(task_set) if task_set else None

    def update(
        self,
        appointment_id: str,
        task_name: TaskName,
        new_state: TaskState,
        detail: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        message: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> bool:
        """
        Apply a state transition for one task.

        Returns False (and changes nothing) when the TaskSet is gone or the
        transition is not allowed, e.g. a second terminal write.
        """
        with self._lock:
            task_set = self._task_sets.get(appointment_id)
            if not task_set or task_name not in task_set.tasks:
                logger.warning(f"⚠️ Ignoring {task_name.value} update for unknown task set {appointment_id}")
                return False

            record = task_set.tasks[task_name]
            if new_state not in _ALLOWED_TRANSITIONS[record.state]:
                logger.warning(
                    f"⚠️ Rejected {task_name.value} transition {record.state.value} → {new_state.value} "
                    f"for appointment {appointment_id}"
                )
                return False

            now = _utcnow()
            record.state = new_state
            if new_state == TaskState.RUNNING:
                record.started_at = now
                record.attempts = max(record.attempts, 1)
            else:
                record.finished_at = now
                record.detail = dict(detail or {})
                record.error_classification = classification
                record.error_message = message
            if attempts is not None:
                record.attempts = attempts

            task_set.last_activity = self._clock()
            return True

    def evict_expired(self) -> int:
        """Purge finished TaskSets idle for longer than the retention window"""
        with self._lock:
            expired = [key for key, task_set in self._task_sets.items() if self._is_expired(task_set)]
            for key in expired:
                del self._task_sets[key]

        if expired:
            logger.info(f"🧹 Evicted {len(expired)} expired task set(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._task_sets)

    def _new_task_set(self, appointment_id: str, task_names: Iterable[TaskName]) -> TaskSet:
        tasks = {name: TaskRecord(name=name, appointment_id=appointment_id) for name in task_names}
        return TaskSet(appointment_id=appointment_id, tasks=tasks, last_activity=self._clock())

    def _is_expired(self, task_set: TaskSet) -> bool:
        idle = self._clock() - task_set.last_activity
        return task_set.is_complete and idle >= self.retention_seconds

    def _evict_if_expired(self, appointment_id: str) -> None:
        # Caller holds the lock
        task_set = self._task_sets.get(appointment_id)
        if task_set and self._is_expired(task_set):
            del self._task_sets[appointment_id]
            logger.debug(f"🧹 Evicted task set {appointment_id} on access")
