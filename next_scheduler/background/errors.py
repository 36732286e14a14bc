"""
Task-local error taxonomy.

Everything raised by a background task is a TaskError carrying a
classification. The orchestrator catches these at the task boundary and
records them; they never reach the booking caller.
"""

from enum import Enum
from typing import Optional


class ErrorClassification(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    GENERATION = "generation"
    DELIVERY = "delivery"
    TIMEOUT = "timeout"
    DEPENDENCY = "dependency"
    INVALID_DATA = "invalid_data"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


class TaskError(Exception):
    classification = ErrorClassification.INTERNAL

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CalendarAuthError(TaskError):
    classification = ErrorClassification.AUTH


class CalendarRateLimitError(TaskError):
    classification = ErrorClassification.RATE_LIMIT


class CalendarTransientError(TaskError):
    classification = ErrorClassification.TRANSIENT


class CompositionError(TaskError):
    classification = ErrorClassification.GENERATION


class DeliveryError(TaskError):
    classification = ErrorClassification.DELIVERY


class TaskTimeoutError(TaskError):
    classification = ErrorClassification.TIMEOUT


class InvalidAppointmentDataError(TaskError):
    classification = ErrorClassification.INVALID_DATA


class ResultPersistenceError(TaskError):
    classification = ErrorClassification.PERSISTENCE
