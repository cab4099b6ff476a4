"""
Turn raw scanned text into a registration reference.

Scanned text comes from a camera, an uploaded image or a manual paste,
so it may be a signed ticket payload, a shared deep link, a typed
ticket/registration id or a base64 blob. Strategies are tried in order
and the first that yields a `registrationId` wins:

    json -> url -> bare id -> base64 json

Only the json variant can be authenticated; the others are lower trust.
"""

import base64
import binascii
import json
import re
from typing import Literal, Optional, Union
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel

from .errors import UnrecognizedFormat

PREVIEW_LENGTH = 100

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_BARE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")


class JsonScan(BaseModel):
    kind: Literal["json"] = "json"
    registration_id: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    # Carries a `hash` and must pass authenticate_payload before use.
    signed: bool = False


class UrlScan(BaseModel):
    kind: Literal["url"] = "url"
    registration_id: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None


class BareIdScan(BaseModel):
    kind: Literal["bare_id"] = "bare_id"
    registration_id: str


class Base64JsonScan(BaseModel):
    kind: Literal["base64_json"] = "base64_json"
    registration_id: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None


ScanReference = Union[JsonScan, UrlScan, BareIdScan, Base64JsonScan]


def preview(raw: str, limit: int = PREVIEW_LENGTH) -> str:
    return raw[:limit] + ("..." if len(raw) > limit else "")


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _registration_fields(data) -> Optional[dict]:
    if not isinstance(data, dict):
        return None
    registration_id = data.get("registrationId")
    if not isinstance(registration_id, (str, int)) or isinstance(registration_id, bool) or registration_id == "":
        return None
    return {
        "registration_id": str(registration_id),
        "event_id": _str_or_none(data.get("eventId")),
        "user_id": _str_or_none(data.get("userId")),
    }


def _from_json(raw: str) -> Optional[JsonScan]:
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    fields = _registration_fields(data)
    if fields is None:
        return None
    return JsonScan(signed="hash" in data, **fields)


def _from_url(raw: str) -> Optional[UrlScan]:
    if not _SCHEME_RE.match(raw):
        return None
    query = parse_qs(urlsplit(raw).query)

    def first(name: str) -> Optional[str]:
        values = query.get(name)
        return values[0] if values and values[0] else None

    registration_id = first("registrationId")
    if not registration_id:
        return None
    return UrlScan(registration_id=registration_id, event_id=first("eventId"), user_id=first("userId"))


def _from_bare_id(raw: str) -> Optional[BareIdScan]:
    if _BARE_ID_RE.match(raw):
        return BareIdScan(registration_id=raw)
    return None


def _from_base64(raw: str) -> Optional[Base64JsonScan]:
    compact = "".join(raw.split())
    if not _BASE64_RE.match(compact):
        return None
    # accept url-safe alphabet and missing padding
    body = compact.rstrip("=").replace("-", "+").replace("_", "/")
    padded = body + "=" * (-len(body) % 4)
    try:
        data = json.loads(base64.b64decode(padded, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError):
        return None
    fields = _registration_fields(data)
    if fields is None:
        return None
    return Base64JsonScan(**fields)


_STRATEGIES = (_from_json, _from_url, _from_bare_id, _from_base64)


def resolve_scan_text(raw: str) -> ScanReference:
    text = (raw or "").strip()
    for strategy in _STRATEGIES:
        ref = strategy(text)
        if ref is not None:
            return ref
    raise UnrecognizedFormat(
        details="QR data must be valid JSON, URL with parameters, or registration ID",
        debug={"received": preview(text)},
    )
