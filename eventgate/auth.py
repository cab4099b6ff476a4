from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, Request
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from .errors import Forbidden, Unauthorized
from .models import Event, UserRole

OPERATOR_AUDIENCE = "eventgate-operator"
OPERATOR_ROLES = (UserRole.ADMIN.value, UserRole.EVENT_ORGANIZER.value)


@dataclass(frozen=True)
class Operator:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


def mint_operator_token(user_id: str, role: str, secret: str, ttl_minutes: int = 60) -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    payload = {"sub": user_id, "role": role, "aud": OPERATOR_AUDIENCE, "exp": exp}
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_operator_token(token: str, secret: str) -> Operator:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"], audience=OPERATOR_AUDIENCE)
    except ExpiredSignatureError:
        raise Unauthorized(details="Operator token has expired")
    except JWTError:
        raise Unauthorized(details="Operator token is invalid")

    for k in ["sub", "role"]:
        if not payload.get(k):
            raise Unauthorized(details="Operator token is missing claims")
    return Operator(user_id=payload["sub"], role=payload["role"])


def require_operator(request: Request, authorization: Optional[str] = Header(default=None)) -> Operator:
    """FastAPI dependency: bearer token of an ADMIN or EVENT_ORGANIZER."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized()
    operator = verify_operator_token(authorization[7:].strip(), request.app.state.settings.signing_secret)
    if operator.role not in OPERATOR_ROLES:
        raise Forbidden()
    return operator


def check_event_access(operator: Operator, event: Event) -> None:
    if operator.is_admin:
        return
    if event.created_by_id != operator.user_id:
        raise Forbidden(details="You can only manage tickets for your own events")
