"""
Check-in / check-out reconciliation.

Per (registration, session) partition the attendance row moves

    (none) --checkin--> open --checkout--> completed

and never back. The (registration_id, session_key) unique constraint is
what serializes concurrent check-ins; check-out is a conditional update.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import (
    AlreadyCheckedIn,
    EventEnded,
    EventNotScannable,
    EventNotStarted,
    InvalidAction,
    NoOpenCheckIn,
    RegistrationNotConfirmed,
    TicketAlreadyUsed,
)
from .logging_config import get_logger
from .models import Attendance, CheckInMethod, Event, EventStatus, Registration, RegistrationStatus, Ticket, session_key
from .security import as_utc, format_timestamp, utcnow

logger = get_logger(__name__)

CHECKIN = "checkin"
CHECKOUT = "checkout"
ACTIONS = (CHECKIN, CHECKOUT)

SCANNABLE_EVENT_STATUSES = (EventStatus.PUBLISHED.value, EventStatus.ONGOING.value)


def check_registration(registration: Registration) -> None:
    if registration.status != RegistrationStatus.CONFIRMED.value:
        raise RegistrationNotConfirmed(details="Participant registration is not confirmed")


def check_event_window(event: Event, now: datetime) -> None:
    if as_utc(now) < as_utc(event.start_date):
        raise EventNotStarted(details="Event has not started yet")
    if as_utc(now) > as_utc(event.end_date):
        raise EventEnded(details="Event has already ended")


def check_event_scannable(event: Event, now: datetime) -> None:
    if event.status not in SCANNABLE_EVENT_STATUSES:
        raise EventNotScannable(
            details=f"Event status is {event.status}. Scanning is only allowed for PUBLISHED or ONGOING events."
        )
    check_event_window(event, now)


def find_attendance(db: Session, registration_id: str, session_id: Optional[str]) -> Optional[Attendance]:
    return db.execute(
        select(Attendance).where(
            Attendance.registration_id == registration_id,
            Attendance.session_key == session_key(session_id),
        )
    ).scalars().first()


def check_in(
    db: Session,
    registration: Registration,
    session_id: Optional[str],
    method: CheckInMethod,
    now: datetime,
) -> Attendance:
    registration_id = registration.id
    existing = find_attendance(db, registration_id, session_id)
    if existing is not None:
        when = format_timestamp(existing.check_in_time) if existing.check_in_time else "an earlier scan"
        raise AlreadyCheckedIn(details=f"Already checked in at {when}")

    attendance = Attendance(
        registration_id=registration_id,
        session_id=session_id,
        session_key=session_key(session_id),
        check_in_time=now,
        method=method.value,
    )
    db.add(attendance)
    ticket = registration.ticket
    if ticket is not None and not ticket.is_used:
        ticket.is_used = True
        ticket.used_at = now

    try:
        db.commit()
    except IntegrityError:
        # another scan inserted the partition row first
        db.rollback()
        raise AlreadyCheckedIn(details="Checked in by a concurrent scan")

    logger.info("check-in registration_id=%s session_id=%s method=%s", registration_id, session_id, method.value)
    return attendance


def check_out(db: Session, registration: Registration, session_id: Optional[str], now: datetime) -> Attendance:
    registration_id = registration.id
    result = db.execute(
        update(Attendance)
        .where(
            Attendance.registration_id == registration_id,
            Attendance.session_key == session_key(session_id),
            Attendance.check_in_time.is_not(None),
            Attendance.check_out_time.is_(None),
        )
        .values(check_out_time=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NoOpenCheckIn(details="Participant must check-in first")
    db.commit()

    attendance = find_attendance(db, registration_id, session_id)
    db.refresh(attendance)
    logger.info("check-out registration_id=%s session_id=%s", registration_id, session_id)
    return attendance


def reconcile_registration(
    db: Session,
    registration: Registration,
    action: str,
    session_id: Optional[str] = None,
    method: CheckInMethod = CheckInMethod.QR_CODE,
    now: Optional[datetime] = None,
) -> Attendance:
    """Validate registration and event state, then apply `action` to the partition."""
    if action not in ACTIONS:
        raise InvalidAction(details=f"Action must be one of {', '.join(ACTIONS)}")
    now = as_utc(now or utcnow())
    session_id = session_id or None

    check_registration(registration)
    check_event_scannable(registration.event, now)

    if action == CHECKIN:
        return check_in(db, registration, session_id, method, now)
    return check_out(db, registration, session_id, now)


def reconcile_attendance(
    db: Session,
    ticket: Ticket,
    action: str,
    session_id: Optional[str] = None,
    method: CheckInMethod = CheckInMethod.QR_CODE,
    now: Optional[datetime] = None,
) -> Attendance:
    return reconcile_registration(db, ticket.registration, action, session_id=session_id, method=method, now=now)


def mark_ticket_used(db: Session, ticket: Ticket, now: Optional[datetime] = None) -> Ticket:
    """Legacy single-shot check-in on the ticket row itself."""
    now = as_utc(now or utcnow())
    result = db.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.is_used.is_(False))
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise TicketAlreadyUsed()
    db.commit()
    db.refresh(ticket)
    return ticket
