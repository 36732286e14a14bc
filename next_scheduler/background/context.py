"""
Data handed to background tasks.

Tasks run after the request's database session is closed, so they work on
an immutable snapshot of the appointment instead of ORM objects.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, TypeVar

from .errors import ErrorClassification, ResultPersistenceError, TaskError, TaskTimeoutError
from .status_store import TaskName, TaskRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = frozenset(
    {ErrorClassification.RATE_LIMIT, ErrorClassification.TRANSIENT, ErrorClassification.TIMEOUT}
)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts per external call; the default of one attempt means no retries"""

    max_attempts: int = 1
    backoff_seconds: float = 2.0
    retry_on: FrozenSet[ErrorClassification] = RETRYABLE

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def should_retry(self, classification: Optional[ErrorClassification], attempt: int) -> bool:
        return attempt < self.max_attempts and classification in self.retry_on

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True)
class ParticipantSnapshot:
    id: str
    name: Optional[str]
    email: Optional[str]
    service_type: Optional[str] = None
    refresh_token_encrypted: Optional[str] = None
    google_access_token: Optional[str] = None
    google_refresh_token: Optional[str] = None

    @classmethod
    def from_user(cls, user) -> "ParticipantSnapshot":
        google_account = next(
            (account for account in (user.accounts or []) if account.provider == "google"), None
        )
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            service_type=user.service_type,
            refresh_token_encrypted=user.refresh_token_encrypted,
            google_access_token=google_account.access_token if google_account else None,
            google_refresh_token=google_account.refresh_token if google_account else None,
        )


@dataclass(frozen=True)
class AppointmentSnapshot:
    id: str
    title: str
    start: datetime  # aware, UTC
    end: datetime  # aware, UTC
    timezone: str
    status: str
    seller: ParticipantSnapshot
    buyer: ParticipantSnapshot

    @classmethod
    def from_model(cls, appointment) -> "AppointmentSnapshot":
        return cls(
            id=appointment.id,
            title=appointment.title,
            start=_as_utc(appointment.start),
            end=_as_utc(appointment.end),
            timezone=appointment.timezone,
            status=appointment.status,
            seller=ParticipantSnapshot.from_user(appointment.seller),
            buyer=ParticipantSnapshot.from_user(appointment.buyer),
        )


def _as_utc(value: datetime) -> datetime:
    # Columns store naive UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CalendarAccount:
    """Credentials for the calendar an event is created on"""

    owner_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    calendar_id: str = "primary"


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    meet_link: Optional[str] = None


@dataclass(frozen=True)
class ComposedEmail:
    subject: str
    body: str


@dataclass
class BackgroundServices:
    """External collaborators used by the background tasks"""

    calendar: Any  # create_event(), add_conference()
    composer: Any  # compose()
    mailer: Any  # send()
    recorder: Any  # record_calendar_event(), record_meeting_link(), record_confirmation_email()


@dataclass
class TaskContext:
    appointment: AppointmentSnapshot
    services: BackgroundServices
    call_timeout: float
    # Terminal records of the task's declared dependencies
    dependencies: Dict[TaskName, TaskRecord] = field(default_factory=dict)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    # Most attempts any single external call needed
    attempts: int = 0

    async def call(self, func: Callable[..., Awaitable[T]], *args, action: str, **kwargs) -> T:
        """
        Run one external call under the per-call timeout.

        Only this call is repeated when the retry policy allows it, so side
        effects completed earlier in the task are never replayed.
        """
        attempt = 0
        while True:
            attempt += 1
            self.attempts = max(self.attempts, attempt)
            try:
                return await self._with_timeout(func(*args, **kwargs), action)
            except TaskError as e:
                if not self.retry_policy.should_retry(e.classification, attempt):
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    f"⚠️ [BACKGROUND-{self.appointment.id}] {action}: attempt {attempt} failed "
                    f"({e.classification.value}), retrying in {delay:g}s"
                )
                await asyncio.sleep(delay)

    async def run_blocking(self, func: Callable[..., T], *args, action: str) -> T:
        """Run a blocking result write in a worker thread; never retried"""
        try:
            return await self._with_timeout(asyncio.to_thread(func, *args), action)
        except TaskTimeoutError as e:
            raise ResultPersistenceError(e.message) from e

    async def _with_timeout(self, awaitable: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise TaskTimeoutError(f"{action} timed out after {self.call_timeout:g}s") from e
