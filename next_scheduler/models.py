import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_id():
    """Generate a unique public identifier"""
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(String(20), nullable=True)  # seller, buyer - null until onboarding picks one
    # Fernet-encrypted Google refresh token (sellers connect their calendar)
    refresh_token_encrypted = Column(Text, nullable=True)
    service_type = Column(String(100), nullable=True)  # consultation, therapy, coaching...
    meeting_duration = Column(Integer, default=30)  # minutes

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    accounts = relationship("OAuthAccount", back_populates="user", cascade="all, delete-orphan")


class OAuthAccount(Base):
    """Sign-in provider account; the buyer's Google credentials live here"""

    __tablename__ = "oauth_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(50), nullable=False)  # google
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)

    user = relationship("User", back_populates="accounts")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (UniqueConstraint("seller_id", "start", name="uq_appointment_seller_start"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    seller_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    buyer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    start = Column(DateTime, nullable=False)  # naive UTC
    end = Column(DateTime, nullable=False)  # naive UTC
    duration = Column(Integer, nullable=True)  # minutes
    timezone = Column(String(64), nullable=False, default="UTC")
    status = Column(String(20), nullable=False, default="confirmed")  # confirmed, cancelled

    # Filled in by background tasks after the booking response
    meet_link = Column(String(500), nullable=True)
    google_event_id = Column(String(500), nullable=True)  # Seller calendar event
    buyer_google_event_id = Column(String(500), nullable=True)
    confirmation_email = Column(Text, nullable=True)  # JSON {subject, body, composer}

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    seller = relationship("User", foreign_keys=[seller_id])
    buyer = relationship("User", foreign_keys=[buyer_id])
