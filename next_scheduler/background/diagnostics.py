"""Read-only view of background task results"""

from datetime import datetime
from typing import Any, Dict, Optional

from .status_store import StatusStore, TaskRecord, TaskSet, TaskState


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def summarize(task_set: TaskSet) -> str:
    """pending, in_progress, completed, partial_success or failed"""
    states = [record.state for record in task_set.tasks.values()]
    if all(state == TaskState.PENDING for state in states):
        return "pending"
    if not task_set.is_complete:
        return "in_progress"
    if all(state == TaskState.SUCCESS for state in states):
        return "completed"
    if all(state == TaskState.FAILED for state in states):
        return "failed"
    return "partial_success"


def task_entry(record: TaskRecord) -> Dict[str, Any]:
    error = None
    if record.error_classification:
        error = {"classification": record.error_classification.value, "message": record.error_message}
    return {
        "status": record.state.value,
        "detail": dict(record.detail),
        "error": error,
        "attempts": record.attempts,
        "startedAt": _isoformat(record.started_at),
        "finishedAt": _isoformat(record.finished_at),
    }


class TaskDiagnostics:
    def __init__(self, store: StatusStore):
        self.store = store

    def get_task_statuses(self, appointment_id: str) -> Optional[Dict[str, Any]]:
        """Status of every task for the appointment, or None if unknown or evicted"""
        task_set = self.store.get(appointment_id)
        if task_set is None:
            return None
        return {
            "appointmentId": appointment_id,
            "summary": summarize(task_set),
            "tasks": {name.value: task_entry(record) for name, record in task_set.tasks.items()},
        }
