from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import TicketMismatch, TicketNotFound
from .resolver import ScanReference, preview
from .models import Ticket

DEBUG_TICKET_SAMPLE = 5
RAW_PREVIEW_LENGTH = 200

SEARCH_ATTEMPTS = ["Exact QR code match", "Registration ID match", "Ticket number match"]


def _first(db: Session, *criteria) -> Optional[Ticket]:
    return db.execute(select(Ticket).where(*criteria).limit(1)).scalars().first()


def find_ticket(db: Session, reference: ScanReference, raw_text: str) -> Ticket:
    """
    Locate the ticket a scan refers to.

    Tries the stored payload text, then the registration id, then the
    ticket number (typed ticket numbers resolve as bare ids).
    """
    candidate = reference.registration_id
    ticket = (
        _first(db, Ticket.qr_code_data == raw_text)
        or _first(db, Ticket.registration_id == candidate)
        or _first(db, Ticket.ticket_number == candidate)
    )
    if ticket is None:
        sample = db.execute(select(Ticket.id, Ticket.ticket_number).limit(DEBUG_TICKET_SAMPLE)).all()
        raise TicketNotFound(
            details="Ticket not found or QR code is invalid",
            debug={
                "searchedId": preview(candidate),
                "receivedQrData": preview(raw_text, RAW_PREVIEW_LENGTH),
                "searchAttempts": SEARCH_ATTEMPTS,
                "availableTickets": [
                    {"id": tid[:8] + "...", "ticketNumber": number} for (tid, number) in sample
                ],
            },
        )
    return ticket


def check_reference_matches(ticket: Ticket, reference: ScanReference) -> None:
    registration = ticket.registration
    event_id = getattr(reference, "event_id", None)
    user_id = getattr(reference, "user_id", None)
    if event_id and event_id != registration.event_id:
        raise TicketMismatch(details="Ticket belongs to a different event")
    if user_id and user_id != registration.user_id:
        raise TicketMismatch(details="Ticket belongs to a different participant")
