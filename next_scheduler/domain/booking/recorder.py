"""Writes background task results back onto the appointment row"""

import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...background.errors import ResultPersistenceError
from ...background.status_store import TaskName
from .repository import BookingRepository

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = {
    TaskName.SELLER_CALENDAR: "google_event_id",
    TaskName.BUYER_CALENDAR: "buyer_google_event_id",
}


class AppointmentRecorder:
    """
    Blocking writes, called from worker threads. Each write uses its own
    session; the request session is long gone by the time tasks run.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self.repo = BookingRepository()

    def _update(self, appointment_id: str, **updates) -> None:
        db = self.session_factory()
        try:
            if not self.repo.update_appointment(db, appointment_id, **updates):
                raise ResultPersistenceError(f"Appointment {appointment_id} no longer exists")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to save task result for appointment {appointment_id}: {e}")
            raise ResultPersistenceError(f"Database error saving {', '.join(updates)}") from e
        finally:
            db.close()

    def record_calendar_event(self, appointment_id: str, task_name: TaskName, event_id: str) -> None:
        self._update(appointment_id, **{_EVENT_COLUMNS[task_name]: event_id})

    def record_meeting_link(self, appointment_id: str, meet_link: str) -> None:
        self._update(appointment_id, meet_link=meet_link)

    def record_confirmation_email(self, appointment_id: str, email_json: str) -> None:
        self._update(appointment_id, confirmation_email=email_json)
