"""Booking repository - Database operations for users and appointments"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import Appointment, User


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_appointment(db: Session, appointment_id: str) -> Optional[Appointment]:
        """Get an appointment with both participants and their OAuth accounts loaded"""
        return (
            db.query(Appointment)
            .options(
                joinedload(Appointment.seller).joinedload(User.accounts),
                joinedload(Appointment.buyer).joinedload(User.accounts),
            )
            .filter(Appointment.id == appointment_id)
            .first()
        )

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        """Create and commit a new appointment"""
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    @staticmethod
    def update_appointment(db: Session, appointment_id: str, **updates) -> bool:
        """Set columns on an appointment; returns False if it no longer exists"""
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            return False
        for key, value in updates.items():
            setattr(appointment, key, value)
        db.commit()
        return True

    @staticmethod
    def get_appointments_since(db: Session, since: datetime) -> list[Appointment]:
        """Confirmed appointments created since the given time, newest first"""
        return (
            db.query(Appointment)
            .filter(Appointment.created_at >= since, Appointment.status == "confirmed")
            .order_by(Appointment.created_at.desc())
            .all()
        )
