import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .attendance import CHECKIN, CHECKOUT, reconcile_registration
from .audit import record_decision
from .auth import Operator, check_event_access, require_operator
from .db import get_db
from .errors import AttendanceNotFound, EventGateError, InvalidAction, NoOpenCheckIn, RegistrationNotFound
from .logging_config import get_logger
from .models import Attendance, CheckInMethod, Event, Registration
from .scan import attendance_to_dict
from .security import format_timestamp

logger = get_logger(__name__)

router = APIRouter(prefix="/attendance", tags=["attendance"], dependencies=[Depends(require_operator)])


class ManualCheckInReq(BaseModel):
    registrationId: str
    sessionId: Optional[str] = None


class AttendanceActionReq(BaseModel):
    action: str


def _attendance_or_404(db: Session, attendance_id: str) -> Attendance:
    attendance = db.get(Attendance, attendance_id)
    if attendance is None:
        raise AttendanceNotFound()
    return attendance


def _participant(registration: Registration) -> dict:
    return {
        "name": registration.user.name,
        "email": registration.user.email,
        "event": registration.event.name,
    }


def attendance_detail(a: Attendance) -> dict:
    registration = a.registration
    body = attendance_to_dict(a)
    body["registration"] = {
        "id": registration.id,
        "user": {"id": registration.user.id, "name": registration.user.name, "email": registration.user.email},
        "event": {
            "id": registration.event.id,
            "name": registration.event.name,
            "location": registration.event.location,
            "startDate": format_timestamp(registration.event.start_date),
            "endDate": format_timestamp(registration.event.end_date),
        },
    }
    return body


@router.get("")
def list_attendance(
    event_id: Optional[str] = Query(None, alias="eventId"),
    registration_id: Optional[str] = Query(None, alias="registrationId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    on: Optional[date] = Query(None, alias="date"),
    limit: int = 500,
    db: Session = Depends(get_db),
    operator: Operator = Depends(require_operator),
):
    """Attendance rows, newest check-in first. Organizers only see their own events."""
    q = (
        select(Attendance)
        .join(Registration, Registration.id == Attendance.registration_id)
        .join(Event, Event.id == Registration.event_id)
    )
    if registration_id:
        q = q.where(Attendance.registration_id == registration_id)
    if event_id:
        q = q.where(Registration.event_id == event_id)
    if session_id:
        q = q.where(Attendance.session_id == session_id)
    if on:
        day = datetime.combine(on, time.min, tzinfo=timezone.utc)
        q = q.where(Attendance.check_in_time >= day, Attendance.check_in_time < day + timedelta(days=1))
    if not operator.is_admin:
        q = q.where(Event.created_by_id == operator.user_id)

    rows = db.execute(q.order_by(Attendance.check_in_time.desc()).limit(limit)).scalars().all()
    return {"attendances": [attendance_detail(a) for a in rows]}


@router.post("")
def manual_check_in(
    req: ManualCheckInReq,
    request: Request,
    db: Session = Depends(get_db),
    operator: Operator = Depends(require_operator),
):
    """Check a registration in by id, for attendees without their code."""
    registration = db.get(Registration, req.registrationId)
    if registration is None:
        raise RegistrationNotFound()
    check_event_access(operator, registration.event)

    decision_id = str(uuid.uuid4())
    event_id = registration.event_id
    try:
        attendance = reconcile_registration(
            db, registration, CHECKIN, session_id=req.sessionId, method=CheckInMethod.MANUAL
        )
    except EventGateError as e:
        record_decision(db, decision_id, request, CHECKIN, "REJECTED", e.reason_code,
                        ticket=registration.ticket, event_id=event_id)
        raise

    record_decision(db, decision_id, request, CHECKIN, "ACCEPTED", "OK_MANUAL",
                    ticket=registration.ticket, event_id=event_id)
    logger.info("manual check-in decision_id=%s registration_id=%s", decision_id, registration.id)
    return {
        "success": True,
        "message": "Check-in successful",
        "attendance": attendance_to_dict(attendance),
        "participant": _participant(registration),
        "decisionId": decision_id,
    }


@router.get("/{attendance_id}")
def get_attendance(attendance_id: str, db: Session = Depends(get_db), operator: Operator = Depends(require_operator)):
    attendance = _attendance_or_404(db, attendance_id)
    check_event_access(operator, attendance.registration.event)
    return {"attendance": attendance_detail(attendance)}


@router.put("/{attendance_id}")
def update_attendance(
    attendance_id: str,
    req: AttendanceActionReq,
    request: Request,
    db: Session = Depends(get_db),
    operator: Operator = Depends(require_operator),
):
    """Check out an open attendance record by its id."""
    if req.action != CHECKOUT:
        raise InvalidAction(details=f"Action must be {CHECKOUT}")
    attendance = _attendance_or_404(db, attendance_id)
    registration = attendance.registration
    check_event_access(operator, registration.event)
    if attendance.check_out_time is not None:
        raise NoOpenCheckIn("Already checked out")

    decision_id = str(uuid.uuid4())
    event_id = registration.event_id
    try:
        attendance = reconcile_registration(db, registration, CHECKOUT, session_id=attendance.session_id)
    except EventGateError as e:
        record_decision(db, decision_id, request, CHECKOUT, "REJECTED", e.reason_code,
                        ticket=registration.ticket, event_id=event_id)
        raise

    record_decision(db, decision_id, request, CHECKOUT, "ACCEPTED", "OK_MANUAL",
                    ticket=registration.ticket, event_id=event_id)
    return {
        "success": True,
        "message": "Check-out successful",
        "attendance": attendance_to_dict(attendance),
        "participant": _participant(registration),
        "decisionId": decision_id,
    }
