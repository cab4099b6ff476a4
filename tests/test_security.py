import json
from datetime import datetime, timedelta, timezone

import pytest

from eventgate.errors import Expired, Malformed, Tampered
from eventgate.security import (
    authenticate_payload,
    build_payload_fields,
    compute_hash,
    format_timestamp,
    sign_payload,
)

SECRET = "unit-test-secret"
ISSUED = datetime(2026, 3, 1, 9, 30, 15, 123456, tzinfo=timezone.utc)


def _fields(**overrides):
    fields = build_payload_fields("reg-1", "evt-1", "user-1", ISSUED)
    fields.update(overrides)
    return fields


def test_payload_wire_format():
    text = sign_payload(_fields(), SECRET)
    data = json.loads(text)

    assert list(data) == ["registrationId", "eventId", "userId", "timestamp", "type", "hash"]
    assert data["timestamp"] == "2026-03-01T09:30:15.123Z"
    assert data["type"] == "EVENT_TICKET"
    assert data["hash"] == data["hash"].lower() and len(data["hash"]) == 64
    # compact separators, hash over the same compact encoding minus `hash`
    assert text.startswith('{"registrationId":"reg-1","eventId":"evt-1"')
    del data["hash"]
    assert json.loads(text)["hash"] == compute_hash(data, SECRET)


def test_round_trip_returns_fields_unchanged():
    fields = _fields()
    out = authenticate_payload(sign_payload(fields, SECRET), SECRET, now=ISSUED + timedelta(hours=1))
    assert out == fields


def test_round_trip_with_non_ascii_values():
    fields = _fields(userId="zoë-ünïcode")
    out = authenticate_payload(sign_payload(fields, SECRET), SECRET, now=ISSUED)
    assert out == fields


@pytest.mark.parametrize("old,new", [
    ('"reg-1"', '"reg-2"'),
    ('"evt-1"', '"evt-9"'),
    ('"user-1"', '"user-7"'),
    ('EVENT_TICKET', 'EVENT_TICKEX'),
    ('09:30:15', '09:30:16'),
])
def test_any_field_change_is_tampered(old, new):
    text = sign_payload(_fields(), SECRET)
    assert old in text
    with pytest.raises(Tampered):
        authenticate_payload(text.replace(old, new, 1), SECRET, now=ISSUED)


def test_flipped_hash_character_is_tampered():
    data = json.loads(sign_payload(_fields(), SECRET))
    h = data["hash"]
    data["hash"] = ("0" if h[0] != "0" else "1") + h[1:]
    with pytest.raises(Tampered):
        authenticate_payload(json.dumps(data, separators=(",", ":")), SECRET, now=ISSUED)


def test_other_secret_is_tampered():
    text = sign_payload(_fields(), "someone-elses-secret")
    with pytest.raises(Tampered):
        authenticate_payload(text, SECRET, now=ISSUED)


def test_expired_after_24_hours():
    text = sign_payload(_fields(), SECRET)
    with pytest.raises(Expired):
        authenticate_payload(text, SECRET, now=ISSUED + timedelta(hours=24, seconds=1))


def test_exactly_24_hours_is_still_valid():
    text = sign_payload(_fields(), SECRET)
    # timestamp is truncated to millis, so measure from the serialized value
    issued = ISSUED.replace(microsecond=123000)
    assert authenticate_payload(text, SECRET, now=issued + timedelta(hours=24))["registrationId"] == "reg-1"


@pytest.mark.parametrize("text", ["not json", "[1, 2, 3]", '"just a string"', ""])
def test_unparseable_payload_is_malformed(text):
    with pytest.raises(Malformed):
        authenticate_payload(text, SECRET, now=ISSUED)


def test_deeply_nested_payload_is_malformed():
    with pytest.raises(Malformed):
        authenticate_payload("[" * 100000, SECRET, now=ISSUED)


def test_unsigned_payload_is_malformed():
    text = json.dumps(_fields())
    with pytest.raises(Malformed):
        authenticate_payload(text, SECRET, now=ISSUED)


@pytest.mark.parametrize("missing", ["registrationId", "eventId"])
def test_missing_required_field_is_malformed(missing):
    fields = _fields()
    del fields[missing]
    with pytest.raises(Malformed):
        authenticate_payload(sign_payload(fields, SECRET), SECRET, now=ISSUED)


def test_bad_timestamp_is_malformed():
    text = sign_payload(_fields(timestamp="yesterday-ish"), SECRET)
    with pytest.raises(Malformed):
        authenticate_payload(text, SECRET, now=ISSUED)


def test_format_timestamp_converts_to_utc():
    local = datetime(2026, 3, 1, 11, 30, 15, 999999, tzinfo=timezone(timedelta(hours=2)))
    assert format_timestamp(local) == "2026-03-01T09:30:15.999Z"
