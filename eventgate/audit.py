from typing import Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .logging_config import get_logger
from .models import AuditLog, Ticket

logger = get_logger(__name__)


def client_info(request: Request) -> tuple[str, str]:
    ip = request.client.host if request.client else "unknown"
    return ip, request.headers.get("user-agent", "")


def record_decision(db: Session, decision_id: str, request: Request, action: str, status: str, reason: str,
                    ticket: Optional[Ticket] = None, event_id: Optional[str] = None) -> None:
    """Append one audit row. A failed write is logged and never fails the request."""
    ip, ua = client_info(request)
    ticket_id = None
    try:
        if ticket is not None:
            # a rejected check-in rolled back; these reads reload the row
            event_id, ticket_id = ticket.registration.event_id, ticket.id
        db.add(AuditLog(decision_id=decision_id, ip=ip, user_agent=ua, action=action, event_id=event_id,
                        ticket_id=ticket_id, status=status, reason_code=reason))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit write failed decision_id=%s", decision_id)
