"""Booking router - FastAPI endpoints for booking and background task diagnostics"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import Appointment, User
from .schemas import (
    AppointmentResponse,
    BookingRequest,
    ParticipantResponse,
    TaskStatusesResponse,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Booking"])


def get_booking_service(request: Request, db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    state = request.app.state
    return BookingService(db, state.orchestrator, state.availability, state.diagnostics)


def to_appointment_response(appointment: Appointment, include_participants: bool = False) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        sellerId=appointment.seller_id,
        buyerId=appointment.buyer_id,
        title=appointment.title,
        start=appointment.start,
        end=appointment.end,
        duration=appointment.duration,
        timezone=appointment.timezone,
        status=appointment.status,
        meetLink=appointment.meet_link,
        seller=ParticipantResponse.model_validate(appointment.seller) if include_participants else None,
        buyer=ParticipantResponse.model_validate(appointment.buyer) if include_participants else None,
        createdAt=appointment.created_at,
    )


@router.post("/book", response_model=AppointmentResponse, status_code=201)
async def book_appointment(
    data: BookingRequest,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Book an appointment; calendar events, meeting link and email follow in the background"""
    appointment = service.book(data, current_user)
    return to_appointment_response(appointment)


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    appointment = service.get_appointment(appointment_id, current_user)
    return to_appointment_response(appointment, include_participants=True)


@router.get("/appointments/{appointment_id}/tasks", response_model=TaskStatusesResponse)
async def get_appointment_tasks(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Status of the background tasks dispatched for an appointment"""
    return service.get_task_statuses(appointment_id, current_user)


@router.post("/appointments/{appointment_id}/tasks/retry", response_model=TaskStatusesResponse, status_code=202)
async def retry_appointment_tasks(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Re-run every background task once the previous run has finished"""
    return service.retry_tasks(appointment_id, current_user)
