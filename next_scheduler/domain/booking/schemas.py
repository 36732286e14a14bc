"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator


class BookingRequest(BaseModel):
    """Schema for booking an appointment with a seller"""

    sellerId: str
    title: Optional[str] = None
    start: str
    end: str
    timezone: str

    @field_validator("sellerId", "start", "end", "timezone")
    @classmethod
    def validate_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if v is not None:
            v = v.strip()
            if len(v) > 255:
                raise ValueError("must be at most 255 characters")
        return v or None


class ParticipantResponse(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""

    id: str
    sellerId: str
    buyerId: str
    title: str
    start: datetime
    end: datetime
    duration: Optional[int] = None
    timezone: str
    status: str
    meetLink: Optional[str] = None
    seller: Optional[ParticipantResponse] = None
    buyer: Optional[ParticipantResponse] = None
    createdAt: Optional[datetime] = None


class TaskErrorResponse(BaseModel):
    classification: str
    message: Optional[str] = None


class TaskStatusResponse(BaseModel):
    status: str
    detail: Dict[str, Any]
    error: Optional[TaskErrorResponse] = None
    attempts: int
    startedAt: Optional[str] = None
    finishedAt: Optional[str] = None


class TaskStatusesResponse(BaseModel):
    """Background task results for one appointment"""

    appointmentId: str
    summary: str
    tasks: Dict[str, TaskStatusResponse]
