"""
Availability Service
Rejects overlapping bookings and holds a seller's slot while it is being committed
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, Tuple

from sqlalchemy.orm import Session

from ..domain.booking.errors import ConflictError
from ..models import Appointment

logger = logging.getLogger(__name__)


class SlotReservation:
    """In-process hold on a slot; release it once the commit has finished"""

    def __init__(self, service: "AvailabilityService", key: str):
        self._service = service
        self.key = key
        self._released = False

    def release(self) -> None:
        if not self._released:
            self._service._release(self.key)
            self._released = True

    def __enter__(self) -> "SlotReservation":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class AvailabilityService:
    def __init__(self):
        self._lock = threading.Lock()
        self._held: Dict[str, Tuple[str, datetime, datetime]] = {}

    def check_and_reserve(self, db: Session, seller_id: str, start: datetime, end: datetime) -> SlotReservation:
        """
        Raise ConflictError if the window overlaps a confirmed appointment or
        a slot another request is committing; otherwise hold the window.

        start and end are naive UTC, matching the stored columns.
        """
        with self._lock:
            for held_seller, held_start, held_end in self._held.values():
                if held_seller == seller_id and held_start < end and held_end > start:
                    logger.warning(f"⚠️ Slot for seller {seller_id} is being booked by another request")
                    raise ConflictError("This time slot is being booked by someone else")

            existing = (
                db.query(Appointment)
                .filter(
                    Appointment.seller_id == seller_id,
                    Appointment.status == "confirmed",
                    Appointment.start < end,
                    Appointment.end > start,
                )
                .first()
            )
            if existing:
                logger.warning(f"⚠️ Slot conflict for seller {seller_id} with appointment {existing.id}")
                raise ConflictError("This time slot is already booked")

            key = uuid.uuid4().hex
            self._held[key] = (seller_id, start, end)
            return SlotReservation(self, key)

    def _release(self, key: str) -> None:
        with self._lock:
            self._held.pop(key, None)
