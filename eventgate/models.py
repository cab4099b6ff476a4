import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Attendance rows for the whole event share this partition key; a NULL
# session_id would slip past the unique constraint.
EVENT_WIDE_SESSION_KEY = "__event__"


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    EVENT_ORGANIZER = "EVENT_ORGANIZER"


class EventStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RegistrationStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    WAITLIST = "WAITLIST"


class CheckInMethod(str, enum.Enum):
    QR_CODE = "QR_CODE"
    MANUAL = "MANUAL"


def _uuid() -> str:
    return str(uuid.uuid4())


def session_key(session_id: Optional[str]) -> str:
    return session_id or EVENT_WIDE_SESSION_KEY


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    role: Mapped[str] = mapped_column(String, default=UserRole.USER.value)


class Event(Base):
    __tablename__ = "events"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, index=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default=EventStatus.DRAFT.value, index=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Registration(Base):
    __tablename__ = "registrations"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String, default=RegistrationStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    event: Mapped[Event] = relationship()
    user: Mapped[User] = relationship()
    ticket: Mapped[Optional["Ticket"]] = relationship(back_populates="registration", uselist=False)

    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uniq_registration_event_user"),)


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    registration_id: Mapped[str] = mapped_column(ForeignKey("registrations.id"), unique=True, index=True)
    ticket_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    qr_code_data: Mapped[str] = mapped_column(Text, index=True)
    qr_code: Mapped[str] = mapped_column(Text)
    # Legacy single-shot projection; Attendance is authoritative.
    is_used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    registration: Mapped[Registration] = relationship(back_populates="ticket")


class Attendance(Base):
    __tablename__ = "attendances"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    registration_id: Mapped[str] = mapped_column(ForeignKey("registrations.id"), index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    session_key: Mapped[str] = mapped_column(String)
    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    method: Mapped[str] = mapped_column(String, default=CheckInMethod.QR_CODE.value)

    registration: Mapped[Registration] = relationship()

    __table_args__ = (UniqueConstraint("registration_id", "session_key", name="uniq_attendance_partition"),)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    ip: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    event_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    ticket_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
