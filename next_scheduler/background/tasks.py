"""
Post-booking background tasks.

Each task wraps the external calls for one side-effect of a confirmed
booking. Tasks report through a TaskOutcome or by raising a TaskError;
the orchestrator turns either into the terminal state of the task.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type

from ..security_utils import decrypt_token
from ..services.email_composer import fallback_confirmation_email
from .context import AppointmentSnapshot, CalendarAccount, TaskContext
from .errors import CalendarAuthError, ErrorClassification, InvalidAppointmentDataError, TaskError
from .status_store import TaskName, TaskState

logger = logging.getLogger(__name__)


@dataclass
class TaskOutcome:
    succeeded: bool
    detail: Dict[str, Any] = field(default_factory=dict)
    classification: Optional[ErrorClassification] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, **detail) -> "TaskOutcome":
        return cls(succeeded=True, detail=detail)

    @classmethod
    def failure(cls, classification: ErrorClassification, message: str, **detail) -> "TaskOutcome":
        return cls(succeeded=False, detail=detail, classification=classification, message=message)


class BackgroundTask(ABC):
    """One side-effect of a committed booking"""

    name: ClassVar[TaskName]
    depends_on: ClassVar[Tuple[TaskName, ...]] = ()

    @abstractmethod
    async def execute(self, context: TaskContext) -> TaskOutcome:
        ...


def seller_calendar_account(appointment: AppointmentSnapshot) -> CalendarAccount:
    seller = appointment.seller
    refresh_token = decrypt_token(seller.refresh_token_encrypted)
    if not refresh_token:
        raise CalendarAuthError(f"Seller {seller.id} has not connected Google Calendar")
    return CalendarAccount(owner_id=seller.id, refresh_token=refresh_token)


def buyer_calendar_account(appointment: AppointmentSnapshot) -> CalendarAccount:
    buyer = appointment.buyer
    if not buyer.google_access_token and not buyer.google_refresh_token:
        raise CalendarAuthError(f"Buyer {buyer.id} has no Google account linked")
    return CalendarAccount(
        owner_id=buyer.id,
        access_token=buyer.google_access_token,
        refresh_token=buyer.google_refresh_token,
    )


class SellerCalendarTask(BackgroundTask):
    name = TaskName.SELLER_CALENDAR

    async def execute(self, context: TaskContext) -> TaskOutcome:
        appointment = context.appointment
        account = seller_calendar_account(appointment)

        event = await context.call(
            context.services.calendar.create_event,
            account,
            appointment,
            attendee=appointment.buyer,
            request_conference=True,
            action="Seller calendar event creation",
        )
        await context.run_blocking(
            context.services.recorder.record_calendar_event,
            appointment.id,
            self.name,
            event.event_id,
            action="Saving seller event id",
        )
        return TaskOutcome.success(eventId=event.event_id, meetLink=event.meet_link)


class BuyerCalendarTask(BackgroundTask):
    name = TaskName.BUYER_CALENDAR

    async def execute(self, context: TaskContext) -> TaskOutcome:
        appointment = context.appointment
        account = buyer_calendar_account(appointment)

        event = await context.call(
            context.services.calendar.create_event,
            account,
            appointment,
            attendee=appointment.seller,
            request_conference=False,
            action="Buyer calendar event creation",
        )
        await context.run_blocking(
            context.services.recorder.record_calendar_event,
            appointment.id,
            self.name,
            event.event_id,
            action="Saving buyer event id",
        )
        return TaskOutcome.success(eventId=event.event_id, meetLink=event.meet_link)


class MeetingLinkTask(BackgroundTask):
    """Derives the meeting link from whichever calendar event exists"""

    name = TaskName.MEETING_LINK
    depends_on = (TaskName.SELLER_CALENDAR, TaskName.BUYER_CALENDAR)

    async def execute(self, context: TaskContext) -> TaskOutcome:
        appointment = context.appointment
        # Seller event first: it is the one created with a conference request
        succeeded = [
            context.dependencies[name]
            for name in self.depends_on
            if context.dependencies[name].state == TaskState.SUCCESS
        ]
        if not succeeded:
            return TaskOutcome.failure(
                ErrorClassification.DEPENDENCY,
                "No calendar event was created, so no meeting link is available",
                meetLink=None,
            )

        source = succeeded[0]
        meet_link = source.detail.get("meetLink")
        if not meet_link:
            account = (
                seller_calendar_account(appointment)
                if source.name == TaskName.SELLER_CALENDAR
                else buyer_calendar_account(appointment)
            )
            meet_link = await context.call(
                context.services.calendar.add_conference,
                account,
                source.detail["eventId"],
                appointment,
                action="Conference creation",
            )

        if not meet_link:
            return TaskOutcome.failure(
                ErrorClassification.TRANSIENT,
                "Calendar event has no conference link",
                meetLink=None,
                source=source.name.value,
            )

        await context.run_blocking(
            context.services.recorder.record_meeting_link,
            appointment.id,
            meet_link,
            action="Saving meeting link",
        )
        return TaskOutcome.success(meetLink=meet_link, source=source.name.value)


class EmailTask(BackgroundTask):
    name = TaskName.EMAIL
    depends_on = (TaskName.MEETING_LINK,)

    async def execute(self, context: TaskContext) -> TaskOutcome:
        appointment = context.appointment
        self._validate(appointment)

        link_record = context.dependencies[TaskName.MEETING_LINK]
        meet_link = link_record.detail.get("meetLink") if link_record.state == TaskState.SUCCESS else None

        composer = "ai"
        fallback_reason = None
        try:
            email = await context.call(
                context.services.composer.compose, appointment, meet_link, action="Email composition"
            )
        except Exception as e:
            # Any composition failure falls back to the static template
            fallback_reason = e.message if isinstance(e, TaskError) else f"{type(e).__name__}: {e}"
            logger.warning(
                f"⚠️ [BACKGROUND-{appointment.id}] AI composition failed, using template: {fallback_reason}"
            )
            composer = "fallback"
            email = fallback_confirmation_email(appointment, meet_link)

        recipient = appointment.buyer.email
        message_id = await context.call(
            context.services.mailer.send, recipient, email.subject, email.body, action="Email delivery"
        )

        await context.run_blocking(
            context.services.recorder.record_confirmation_email,
            appointment.id,
            json.dumps({"subject": email.subject, "body": email.body, "composer": composer}),
            action="Saving confirmation email",
        )
        return TaskOutcome.success(
            messageId=message_id,
            recipient=recipient,
            subject=email.subject,
            composer=composer,
            fallbackReason=fallback_reason,
            meetLink=meet_link,
        )

    @staticmethod
    def _validate(appointment: AppointmentSnapshot) -> None:
        missing = []
        if not appointment.seller.name:
            missing.append("seller name")
        if not appointment.buyer.name:
            missing.append("buyer name")
        if not appointment.buyer.email:
            missing.append("buyer email")
        if missing:
            raise InvalidAppointmentDataError(f"Appointment is missing {', '.join(missing)}")


TASK_TYPES: Mapping[TaskName, Type[BackgroundTask]] = {
    task.name: task for task in (SellerCalendarTask, BuyerCalendarTask, MeetingLinkTask, EmailTask)
}


def default_tasks() -> Dict[TaskName, BackgroundTask]:
    return {name: task_type() for name, task_type in TASK_TYPES.items()}


def dependency_graph(tasks: Mapping[TaskName, BackgroundTask]) -> Dict[TaskName, Tuple[TaskName, ...]]:
    return {name: task.depends_on for name, task in tasks.items()}
