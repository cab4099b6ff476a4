from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .attendance import ACTIONS, CHECKIN, check_event_window, reconcile_attendance
from .auth import Operator, check_event_access
from .config import Settings
from .errors import EventGateError, InvalidAction, Malformed, TicketMismatch, TicketNotFound, Unauthenticated
from .lookup import check_reference_matches, find_ticket
from .models import Attendance, CheckInMethod, Ticket
from .resolver import JsonScan, resolve_scan_text
from .security import authenticate_payload, format_timestamp, utcnow


@dataclass
class ScanResult:
    action: str
    ticket: Ticket
    attendance: Attendance
    # True only when the scan was a signed payload that authenticated.
    trusted: bool
    resolved_via: str


def process_scan(
    db: Session,
    qr_data: str,
    action: str,
    settings: Settings,
    session_id: Optional[str] = None,
    manual: bool = False,
    operator: Optional[Operator] = None,
    now: Optional[datetime] = None,
) -> ScanResult:
    if not qr_data or not qr_data.strip():
        raise Malformed("QR data is required")
    if action not in ACTIONS:
        raise InvalidAction(details=f"Action must be one of {', '.join(ACTIONS)}")

    qr_data = qr_data.strip()
    reference = resolve_scan_text(qr_data)

    trusted = False
    if isinstance(reference, JsonScan) and reference.signed:
        # a payload that presents a signature has to verify
        authenticate_payload(qr_data, settings.signing_secret, now=now)
        trusted = True
    elif not settings.allow_unauthenticated_scans:
        raise Unauthenticated(details=f"Scan resolved from {reference.kind} input, which is not signed")

    ticket = find_ticket(db, reference, qr_data)
    try:
        check_reference_matches(ticket, reference)
        if operator is not None:
            check_event_access(operator, ticket.registration.event)

        method = CheckInMethod.MANUAL if manual else CheckInMethod.QR_CODE
        attendance = reconcile_attendance(db, ticket, action, session_id=session_id, method=method, now=now)
    except EventGateError as exc:
        exc.ticket = ticket
        raise
    return ScanResult(action=action, ticket=ticket, attendance=attendance, trusted=trusted, resolved_via=reference.kind)


def verify_ticket(
    db: Session,
    payload_text: str,
    settings: Settings,
    operator: Optional[Operator] = None,
    now: Optional[datetime] = None,
) -> Ticket:
    """Authenticate a signed payload and check it against the stored ticket."""
    if not payload_text:
        raise Malformed("QR code data is required")
    fields = authenticate_payload(payload_text, settings.signing_secret, now=now)

    ticket = db.execute(
        select(Ticket).where(Ticket.registration_id == str(fields["registrationId"])).limit(1)
    ).scalars().first()
    if ticket is None:
        raise TicketNotFound("Ticket not found")

    registration = ticket.registration
    # a signed payload names both owners; a missing userId is a mismatch too
    if str(fields["eventId"]) != registration.event_id:
        raise TicketMismatch(details="Ticket belongs to a different event")
    if str(fields.get("userId") or "") != registration.user_id:
        raise TicketMismatch(details="Ticket belongs to a different participant")
    if operator is not None:
        check_event_access(operator, ticket.registration.event)
    check_event_window(ticket.registration.event, now or utcnow())
    return ticket


# --- response shapes ---
def _ts(dt: Optional[datetime]) -> Optional[str]:
    return format_timestamp(dt) if dt else None


def attendance_to_dict(a: Attendance) -> dict:
    return {
        "id": a.id,
        "registrationId": a.registration_id,
        "sessionId": a.session_id,
        "checkInTime": _ts(a.check_in_time),
        "checkOutTime": _ts(a.check_out_time),
        "method": a.method,
    }


def ticket_to_dict(t: Ticket) -> dict:
    registration = t.registration
    return {
        "id": t.id,
        "ticketNumber": t.ticket_number,
        "isUsed": t.is_used,
        "usedAt": _ts(t.used_at),
        "registration": {
            "id": registration.id,
            "status": registration.status,
            "user": {"id": registration.user.id, "name": registration.user.name, "email": registration.user.email},
            "event": {
                "id": registration.event.id,
                "name": registration.event.name,
                "location": registration.event.location,
                "status": registration.event.status,
                "startDate": _ts(registration.event.start_date),
                "endDate": _ts(registration.event.end_date),
            },
        },
    }


def scan_response(result: ScanResult, decision_id: str) -> dict:
    registration = result.ticket.registration
    participant = {
        "name": registration.user.name,
        "email": registration.user.email,
        "event": registration.event.name,
    }
    if result.action == CHECKIN:
        message = "Check-in successful"
        participant["checkInTime"] = _ts(result.attendance.check_in_time)
    else:
        message = "Check-out successful"
        participant["checkOutTime"] = _ts(result.attendance.check_out_time)

    return {
        "success": True,
        "message": message,
        "attendance": attendance_to_dict(result.attendance),
        "participant": participant,
        "trusted": result.trusted,
        "resolvedVia": result.resolved_via,
        "decisionId": decision_id,
    }
