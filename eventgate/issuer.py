import base64
import io
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_H
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConfigError, DuplicateTicketNumber, RegistrationNotConfirmed, RenderFailure, TicketAlreadyIssued
from .logging_config import get_logger
from .models import Registration, RegistrationStatus, Ticket
from .security import build_payload_fields, sign_payload, utcnow

logger = get_logger(__name__)

TICKET_PREFIX = "TK"
QR_TARGET_WIDTH = 256
MAX_ISSUE_ATTEMPTS = 3

_BASE36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def generate_ticket_number(now: Optional[datetime] = None) -> str:
    # TK-<base36 epoch millis>-<8 hex>, e.g. TK-lx2k9q1a-3F9A0C11
    now = now or utcnow()
    stamp = _base36(int(now.timestamp() * 1000))
    return f"{TICKET_PREFIX}-{stamp}-{secrets.token_hex(4).upper()}"


def render_qr_data_url(data: str) -> str:
    """Render `data` as a PNG QR code and return it as a data URL."""
    try:
        qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_H, box_size=1, border=1)
        qr.add_data(data)
        qr.make(fit=True)
        qr.box_size = max(1, QR_TARGET_WIDTH // (qr.modules_count + 2 * qr.border))

        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
    except Exception as e:
        logger.exception("qr render failed")
        raise RenderFailure(details=str(e)) from e

    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


@dataclass(frozen=True)
class IssuedTicket:
    ticket_number: str
    payload_text: str
    rendered_code: str


class TicketIssuer:
    def __init__(self, secret: str, number_factory: Callable[[], str] = generate_ticket_number):
        if not secret:
            raise ConfigError("ticket issuer needs a signing secret")
        self._secret = secret
        self._number_factory = number_factory

    def new_ticket_number(self) -> str:
        return self._number_factory()

    def issue(self, registration_id: str, event_id: str, user_id: str, now: Optional[datetime] = None) -> IssuedTicket:
        fields = build_payload_fields(registration_id, event_id, user_id, now or utcnow())
        payload_text = sign_payload(fields, self._secret)
        return IssuedTicket(
            ticket_number=self.new_ticket_number(),
            payload_text=payload_text,
            rendered_code=render_qr_data_url(payload_text),
        )


def _ticket_for(db: Session, registration_id: str) -> Optional[Ticket]:
    return db.execute(select(Ticket).where(Ticket.registration_id == registration_id)).scalars().first()


def issue_ticket(
    db: Session,
    registration: Registration,
    issuer: TicketIssuer,
    now: Optional[datetime] = None,
    max_attempts: int = MAX_ISSUE_ATTEMPTS,
) -> Ticket:
    """
    Issue and persist the ticket for a confirmed registration.

    The payload and image are produced before anything is written. A
    ticket number rejected by the store is regenerated up to
    `max_attempts` times before DuplicateTicketNumber is raised.
    """
    registration_id = registration.id
    if registration.status != RegistrationStatus.CONFIRMED.value:
        raise RegistrationNotConfirmed(details=f"Registration status is {registration.status}")
    if _ticket_for(db, registration_id):
        raise TicketAlreadyIssued()

    issued = issuer.issue(registration_id, registration.event_id, registration.user_id, now=now)
    number = issued.ticket_number

    for attempt in range(1, max_attempts + 1):
        ticket = Ticket(
            registration_id=registration_id,
            ticket_number=number,
            qr_code_data=issued.payload_text,
            qr_code=issued.rendered_code,
        )
        db.add(ticket)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if _ticket_for(db, registration_id):
                raise TicketAlreadyIssued()
            logger.warning("ticket number collision number=%s attempt=%d", number, attempt)
            number = issuer.new_ticket_number()
            continue

        logger.info("issued ticket ticket_id=%s registration_id=%s", ticket.id, registration_id)
        return ticket

    raise DuplicateTicketNumber(details=f"Gave up after {max_attempts} attempts")
