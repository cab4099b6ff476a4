import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Optional

from .errors import Expired, Malformed, Tampered

TICKET_TYPE = "EVENT_TICKET"
MAX_PAYLOAD_AGE_HOURS = 24
REQUIRED_FIELDS = ("registrationId", "eventId")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 with millisecond precision and a `Z` suffix."""
    dt = as_utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def canonical_json(fields: dict) -> str:
    return json.dumps(fields, separators=(",", ":"), ensure_ascii=False)


def compute_hash(fields: dict, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(fields).encode("utf-8"), hashlib.sha256).hexdigest()


def sign_payload(fields: dict, secret: str) -> str:
    """Append the keyed hash to `fields` and serialize the ticket payload."""
    signed = dict(fields)
    signed["hash"] = compute_hash(fields, secret)
    return canonical_json(signed)


def build_payload_fields(registration_id: str, event_id: str, user_id: str, issued_at: datetime) -> dict:
    return {
        "registrationId": registration_id,
        "eventId": event_id,
        "userId": user_id,
        "timestamp": format_timestamp(issued_at),
        "type": TICKET_TYPE,
    }


def authenticate_payload(payload_text: str, secret: str, now: Optional[datetime] = None) -> dict:
    """
    Verify a scanned ticket payload and return its fields (minus `hash`).

    Raises Malformed for unparseable or incomplete payloads, Tampered when
    the keyed hash does not match and Expired when the payload was issued
    more than MAX_PAYLOAD_AGE_HOURS ago.
    """
    try:
        data = json.loads(payload_text)
    except (TypeError, ValueError, RecursionError):
        raise Malformed()
    if not isinstance(data, dict):
        raise Malformed()

    provided = data.pop("hash", None)
    if not isinstance(provided, str) or not provided:
        raise Malformed(details="Ticket payload is not signed")
    for k in REQUIRED_FIELDS:
        if not data.get(k):
            raise Malformed(details=f"Ticket payload is missing {k}")

    expected = compute_hash(data, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        raise Tampered()

    issued = data.get("timestamp")
    if not isinstance(issued, str):
        raise Malformed(details="Ticket payload has no issue time")
    try:
        issued_at = parse_timestamp(issued)
    except ValueError:
        raise Malformed(details="Ticket payload has an invalid issue time")

    now = as_utc(now or utcnow())
    age_hours = (now - issued_at).total_seconds() / 3600
    if age_hours > MAX_PAYLOAD_AGE_HOURS:
        raise Expired(details=f"Issued {age_hours:.1f} hours ago")

    return data
