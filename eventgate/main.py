import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .admin import router as admin_router
from .attendance import CHECKIN, mark_ticket_used
from .attendance_routes import router as attendance_router
from .audit import client_info, record_decision
from .auth import Operator, check_event_access, require_operator
from .config import Settings, load_settings
from .db import Base, engine, get_db
from .errors import EventGateError, InvalidAction, RateLimited, RegistrationNotFound, TicketNotFound
from .idempotency import get_cached_response, set_cached_response
from .issuer import TicketIssuer, issue_ticket
from .logging_config import get_logger, setup_logging
from .models import Registration, Ticket
from .rate_limit import token_bucket
from .scan import process_scan, scan_response, ticket_to_dict, verify_ticket

logger = get_logger(__name__)


class ScanReq(BaseModel):
    qrData: str
    sessionId: Optional[str] = None
    action: str = CHECKIN
    # True when staff typed the code instead of scanning it
    manual: bool = False


class VerifyReq(BaseModel):
    qrCodeData: str


class TicketActionReq(BaseModel):
    action: str


def create_app(settings: Settings | None = None) -> FastAPI:
    setup_logging()
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        yield
        if app.state.redis is not None:
            await app.state.redis.aclose()

    app = FastAPI(title="Event Ticket Gate", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.issuer = TicketIssuer(settings.signing_secret)
    app.state.redis = Redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
    app.include_router(admin_router)
    app.include_router(attendance_router)

    @app.exception_handler(EventGateError)
    async def handle_domain_error(request: Request, exc: EventGateError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.post("/attendance/scan")
    async def scan_attendance(
        req: ScanReq,
        request: Request,
        db: Session = Depends(get_db),
        operator: Operator = Depends(require_operator),
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        decision_id = str(uuid.uuid4())
        redis = request.app.state.redis

        # Idempotency
        if redis is not None and idempotency_key:
            cached = await get_cached_response(redis, operator.user_id, idempotency_key)
            if cached:
                return JSONResponse(status_code=cached["status_code"], content=cached["body"])

        headers = {}
        try:
            if redis is not None:
                ip, _ = client_info(request)
                limit = settings.scan_rate_limit_per_minute
                allowed, retry_after = await token_bucket(
                    redis, key=f"scan:{ip}", capacity=limit, refill_per_sec=limit / 60
                )
                if not allowed:
                    headers["Retry-After"] = str(retry_after)
                    raise RateLimited(details=f"Retry in {retry_after} seconds")

            result = process_scan(
                db,
                req.qrData,
                req.action,
                settings,
                session_id=req.sessionId,
                manual=req.manual,
                operator=operator,
            )
        except EventGateError as e:
            status_code, body = e.status_code, e.to_response()
            body["decisionId"] = decision_id
            record_decision(db, decision_id, request, req.action, "REJECTED", e.reason_code, ticket=e.ticket)
            logger.info("scan rejected decision_id=%s reason=%s", decision_id, e.reason_code)
        else:
            status_code, body = 200, scan_response(result, decision_id)
            reason = "OK" if result.trusted else f"OK_{result.resolved_via.upper()}"
            record_decision(db, decision_id, request, req.action, "ACCEPTED", reason, ticket=result.ticket)
            logger.info("scan accepted decision_id=%s ticket_id=%s action=%s", decision_id, result.ticket.id, req.action)

        # throttled attempts are not cached
        if redis is not None and idempotency_key and not headers:
            await set_cached_response(redis, operator.user_id, idempotency_key, {"status_code": status_code, "body": body})
        return JSONResponse(status_code=status_code, content=body, headers=headers or None)

    @app.post("/qr/verify")
    def verify_qr(req: VerifyReq, db: Session = Depends(get_db), operator: Operator = Depends(require_operator)):
        ticket = verify_ticket(db, req.qrCodeData, settings, operator=operator)
        return {"valid": True, "ticket": ticket_to_dict(ticket)}

    @app.put("/tickets/{ticket_id}")
    def check_in_ticket(
        ticket_id: str,
        req: TicketActionReq,
        db: Session = Depends(get_db),
        operator: Operator = Depends(require_operator),
    ):
        """Single-shot check-in on the ticket row, for events without sessions."""
        if req.action != "check-in":
            raise InvalidAction()
        ticket = db.get(Ticket, ticket_id)
        if ticket is None:
            raise TicketNotFound("Ticket not found")
        check_event_access(operator, ticket.registration.event)

        ticket = mark_ticket_used(db, ticket)
        return {"message": "Ticket checked in successfully", "ticket": ticket_to_dict(ticket)}

    @app.post("/registrations/{registration_id}/ticket", status_code=201)
    def issue_registration_ticket(
        registration_id: str,
        request: Request,
        db: Session = Depends(get_db),
        operator: Operator = Depends(require_operator),
    ):
        registration = db.get(Registration, registration_id)
        if registration is None:
            raise RegistrationNotFound()
        check_event_access(operator, registration.event)

        ticket = issue_ticket(db, registration, request.app.state.issuer)
        body = ticket_to_dict(ticket)
        body["qrCode"] = ticket.qr_code
        return body

    return app


app = create_app()
