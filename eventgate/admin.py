from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import Operator, check_event_access, require_operator
from .db import get_db
from .errors import EventNotFound, StateConflict
from .issuer import issue_ticket
from .models import Attendance, AuditLog, Event, EventStatus, Registration, RegistrationStatus, Ticket, User
from .scan import ticket_to_dict
from .security import as_utc, format_timestamp

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_operator)])


def _event_or_404(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if event is None:
        raise EventNotFound()
    return event


# -------------------------
# Events
# -------------------------
class CreateEventReq(BaseModel):
    name: str
    startDate: datetime
    endDate: datetime
    location: Optional[str] = None
    status: EventStatus = EventStatus.PUBLISHED


@router.post("/events", status_code=201)
def create_event(req: CreateEventReq, db: Session = Depends(get_db), operator: Operator = Depends(require_operator)):
    start, end = as_utc(req.startDate), as_utc(req.endDate)
    if end < start:
        raise StateConflict("Invalid event dates", details="endDate must not be before startDate")

    event = Event(
        name=req.name,
        location=req.location,
        start_date=start,
        end_date=end,
        status=req.status.value,
        created_by_id=operator.user_id,
    )
    db.add(event)
    db.commit()
    return {
        "id": event.id,
        "name": event.name,
        "status": event.status,
        "startDate": format_timestamp(event.start_date),
        "endDate": format_timestamp(event.end_date),
    }


@router.get("/events")
def list_events(db: Session = Depends(get_db), operator: Operator = Depends(require_operator)):
    q = select(Event).order_by(Event.start_date.desc())
    if not operator.is_admin:
        q = q.where(Event.created_by_id == operator.user_id)
    return [
        {
            "id": e.id,
            "name": e.name,
            "status": e.status,
            "startDate": format_timestamp(e.start_date),
            "endDate": format_timestamp(e.end_date),
        }
        for e in db.execute(q).scalars().all()
    ]


# -------------------------
# Registrations
# -------------------------
class RegisterReq(BaseModel):
    name: str
    email: str


@router.post("/events/{event_id}/registrations", status_code=201)
def register_participant(
    event_id: str,
    req: RegisterReq,
    request: Request,
    db: Session = Depends(get_db),
    operator: Operator = Depends(require_operator),
):
    """Register a participant (auto-confirmed) and issue their ticket."""
    event = _event_or_404(db, event_id)
    check_event_access(operator, event)
    if event.status != EventStatus.PUBLISHED.value:
        raise StateConflict("Event is not available for registration")

    user = db.execute(select(User).where(User.email == req.email)).scalars().first()
    if user is None:
        user = User(name=req.name, email=req.email)
        db.add(user)

    registration = Registration(event_id=event.id, user=user, status=RegistrationStatus.CONFIRMED.value)
    db.add(registration)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise StateConflict("Participant is already registered for this event")

    ticket = issue_ticket(db, registration, request.app.state.issuer)
    body = ticket_to_dict(ticket)
    body["qrCode"] = ticket.qr_code
    body["qrCodeData"] = ticket.qr_code_data
    return body


@router.get("/events/{event_id}/tickets")
def list_tickets(event_id: str, limit: int = 500, db: Session = Depends(get_db),
                 operator: Operator = Depends(require_operator)):
    check_event_access(operator, _event_or_404(db, event_id))

    rows = db.execute(
        select(Ticket).join(Registration, Registration.id == Ticket.registration_id)
        .where(Registration.event_id == event_id).limit(limit)
    ).scalars().all()

    checked_in = db.execute(
        select(Attendance.registration_id, Attendance.check_in_time, Attendance.check_out_time)
        .join(Registration, Registration.id == Attendance.registration_id)
        .where(Registration.event_id == event_id, Attendance.session_id.is_(None))
    ).all()
    attendance_map = {rid: (cin, cout) for (rid, cin, cout) in checked_in}

    out = []
    for t in rows:
        cin, cout = attendance_map.get(t.registration_id, (None, None))
        if cout:
            status = "CHECKED_OUT"
        elif cin:
            status = "CHECKED_IN"
        else:
            status = "UNUSED"
        out.append({
            "ticketId": t.id,
            "ticketNumber": t.ticket_number,
            "registrationId": t.registration_id,
            "status": status,
            "checkInTime": format_timestamp(cin) if cin else None,
            "checkOutTime": format_timestamp(cout) if cout else None,
        })
    return out


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, event_id: Optional[str] = None, db: Session = Depends(get_db),
              operator: Operator = Depends(require_operator)):
    q = select(AuditLog, Event).join(Event, Event.id == AuditLog.event_id, isouter=True)
    if not operator.is_admin:
        q = q.where(Event.created_by_id == operator.user_id)
    if event_id:
        q = q.where(AuditLog.event_id == event_id)
    rows = db.execute(q.order_by(AuditLog.id.desc()).limit(limit)).all()

    return [
        {
            "createdAt": str(log.created_at),
            "decisionId": log.decision_id,
            "action": log.action,
            "ticketId": log.ticket_id,
            "eventId": log.event_id,
            "eventName": ev.name if ev else None,
            "status": log.status,
            "reasonCode": log.reason_code,
        }
        for log, ev in rows
    ]
