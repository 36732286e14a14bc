"""Booking service - commit gate for appointments and their background tasks"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...background.context import AppointmentSnapshot
from ...background.diagnostics import TaskDiagnostics
from ...background.orchestrator import OrchestratorUnavailableError, TaskOrchestrator
from ...background.status_store import TaskSetExistsError
from ...models import Appointment, User
from ...services.availability_service import AvailabilityService
from .errors import ConflictError, PersistenceError, SellerNotFoundError, ValidationError
from .repository import BookingRepository
from .schemas import BookingRequest

logger = logging.getLogger(__name__)


def _parse_datetime(value: str, field: str, tz: ZoneInfo) -> datetime:
    """Parse ISO-8601; naive values are read in the booking timezone. Returns naive UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid {field}: expected an ISO-8601 datetime") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


class BookingService:
    """Service layer for booking business logic"""

    def __init__(
        self,
        db: Session,
        orchestrator: TaskOrchestrator,
        availability: AvailabilityService,
        diagnostics: Optional[TaskDiagnostics] = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.availability = availability
        self.diagnostics = diagnostics or TaskDiagnostics(orchestrator.store)
        self.repo = BookingRepository()

    # ========================================================================
    # COMMIT GATE
    # ========================================================================

    def book(self, data: BookingRequest, buyer: User) -> Appointment:
        """
        Validate and persist an appointment, then hand it to the orchestrator.

        The appointment is returned as soon as it is committed; background
        task outcomes never change the result of this call.
        """
        start, end, tz_name = self._validate_window(data)

        seller = self.repo.get_user(self.db, data.sellerId)
        if not seller or seller.role != "seller":
            raise SellerNotFoundError("Seller not found")
        if seller.id == buyer.id:
            raise ValidationError("You cannot book an appointment with yourself")

        title = data.title or f"Meeting with {seller.name or 'seller'}"
        logger.info(f"📥 Booking {start.isoformat()} with seller {seller.id} for buyer {buyer.id}")

        with self.availability.check_and_reserve(self.db, seller.id, start, end):
            try:
                appointment = self.repo.create_appointment(
                    self.db,
                    seller_id=seller.id,
                    buyer_id=buyer.id,
                    title=title,
                    start=start,
                    end=end,
                    duration=int((end - start).total_seconds() // 60),
                    timezone=tz_name,
                    status="confirmed",
                )
            except IntegrityError as e:
                self.db.rollback()
                logger.warning(f"⚠️ Unique constraint rejected booking for seller {seller.id}: {e.orig}")
                raise ConflictError("This time slot is already booked") from e
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"❌ Failed to save appointment: {e}")
                raise PersistenceError("Failed to save appointment") from e

        logger.info(f"✅ Appointment {appointment.id} confirmed")
        self._dispatch(appointment)
        return appointment

    def _validate_window(self, data: BookingRequest) -> Tuple[datetime, datetime, str]:
        try:
            tz = ZoneInfo(data.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError(f"Unknown timezone: {data.timezone}") from e

        start = _parse_datetime(data.start, "start", tz)
        end = _parse_datetime(data.end, "end", tz)
        if end <= start:
            raise ValidationError("End time must be after start time")
        return start, end, data.timezone

    def _dispatch(self, appointment: Appointment) -> None:
        snapshot = AppointmentSnapshot.from_model(appointment)
        try:
            self.orchestrator.dispatch(snapshot)
        except (OrchestratorUnavailableError, TaskSetExistsError) as e:
            # The booking is committed; background work is best-effort
            logger.error(f"❌ [BACKGROUND-{appointment.id}] Dispatch failed: {e}")

    # ========================================================================
    # LOOKUP, DIAGNOSTICS AND RETRY
    # ========================================================================

    def get_appointment(self, appointment_id: str, user: User) -> Appointment:
        """Get an appointment the user takes part in"""
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise HTTPException(status_code=404, detail="Appointment not found")
        if user.id not in (appointment.seller_id, appointment.buyer_id):
            raise HTTPException(status_code=403, detail="Not a participant of this appointment")
        return appointment

    def get_task_statuses(self, appointment_id: str, user: User) -> Dict[str, Any]:
        self.get_appointment(appointment_id, user)
        statuses = self.diagnostics.get_task_statuses(appointment_id)
        if statuses is None:
            raise HTTPException(status_code=404, detail="No background tasks found for this appointment")
        return statuses

    def retry_tasks(self, appointment_id: str, user: User) -> Dict[str, Any]:
        """Run the background tasks again after the previous run finished"""
        appointment = self.get_appointment(appointment_id, user)
        if appointment.status != "confirmed":
            raise HTTPException(status_code=409, detail="Only confirmed appointments can be retried")

        try:
            self.orchestrator.redispatch(AppointmentSnapshot.from_model(appointment))
        except TaskSetExistsError as e:
            raise HTTPException(status_code=409, detail="Background tasks are still running") from e
        except OrchestratorUnavailableError as e:
            raise HTTPException(status_code=503, detail="Background processing is unavailable") from e

        logger.info(f"🔄 Background tasks re-dispatched for appointment {appointment_id} by {user.id}")
        return self.diagnostics.get_task_statuses(appointment_id)
