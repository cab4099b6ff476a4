from datetime import timedelta

import pytest

from tests.helpers import auth_headers, create_event, now_utc, register, ticketed

pytestmark = pytest.mark.asyncio


async def check_in(client, registration_id, headers=None, **extra):
    body = {"registrationId": registration_id, **extra}
    return await client.post("/attendance", json=body, headers=headers or auth_headers())


async def test_manual_check_in(client, db):
    event = create_event(db)
    registration = register(db, event)

    r = await check_in(client, registration.id)
    assert r.status_code == 200, r.json()
    data = r.json()
    assert data["message"] == "Check-in successful"
    assert data["attendance"]["method"] == "MANUAL"
    assert data["attendance"]["sessionId"] is None
    assert data["participant"] == {"name": "Ada Lovelace", "email": registration.user.email, "event": "Test Event"}

    again = await check_in(client, registration.id)
    assert again.status_code == 400
    assert again.json()["reasonCode"] == "ALREADY_CHECKED_IN"


async def test_manual_check_in_shares_partition_with_scans(client, db, issuer):
    _, registration, ticket = ticketed(db, issuer)

    scanned = await client.post(
        "/attendance/scan", json={"qrData": ticket.qr_code_data, "sessionId": "keynote"}, headers=auth_headers()
    )
    assert scanned.status_code == 200

    r = await check_in(client, registration.id, sessionId="keynote")
    assert r.json()["reasonCode"] == "ALREADY_CHECKED_IN"
    r = await check_in(client, registration.id, sessionId="workshop")
    assert r.status_code == 200


async def test_manual_check_in_preconditions(client, db):
    ended = create_event(db, starts_in=timedelta(days=-2), duration=timedelta(hours=2))
    pending = register(db, create_event(db, name="Pending"), status="PENDING")

    r = await check_in(client, register(db, ended).id)
    assert r.json()["reasonCode"] == "EVENT_ENDED"
    r = await check_in(client, pending.id)
    assert r.json()["reasonCode"] == "REGISTRATION_NOT_CONFIRMED"
    r = await check_in(client, "no-such-registration")
    assert r.status_code == 404
    assert r.json()["reasonCode"] == "REGISTRATION_NOT_FOUND"


async def test_manual_check_in_other_organizer_forbidden(client, db):
    registration = register(db, create_event(db, owner_id="organizer-2"))

    r = await check_in(client, registration.id)
    assert r.status_code == 403


async def test_list_attendance_filters(client, db):
    event = create_event(db)
    ada = register(db, event)
    bob = register(db, event, name="Bob Builder")
    await check_in(client, ada.id)
    await check_in(client, ada.id, sessionId="keynote")
    await check_in(client, bob.id, sessionId="keynote")

    async def listed(**params):
        r = await client.get("/attendance", params=params, headers=auth_headers())
        assert r.status_code == 200, r.json()
        return r.json()["attendances"]

    assert len(await listed(eventId=event.id)) == 3
    assert {a["registrationId"] for a in await listed(sessionId="keynote")} == {ada.id, bob.id}
    assert len(await listed(registrationId=ada.id)) == 2
    assert len(await listed(registrationId=ada.id, sessionId="keynote")) == 1

    today = now_utc().date()
    assert len(await listed(date=today.isoformat())) == 3
    assert await listed(date=(today - timedelta(days=1)).isoformat()) == []

    row = (await listed(registrationId=bob.id))[0]
    assert row["registration"]["user"]["name"] == "Bob Builder"
    assert row["registration"]["event"]["id"] == event.id


async def test_list_attendance_is_scoped_to_own_events(client, db):
    mine = register(db, create_event(db, name="Mine"))
    theirs = register(db, create_event(db, name="Theirs", owner_id="organizer-2"))
    await check_in(client, mine.id)
    await check_in(client, theirs.id, headers=auth_headers("organizer-2"))

    own = (await client.get("/attendance", headers=auth_headers())).json()["attendances"]
    assert [a["registrationId"] for a in own] == [mine.id]

    everything = (await client.get("/attendance", headers=auth_headers("admin-1", "ADMIN"))).json()["attendances"]
    assert {a["registrationId"] for a in everything} == {mine.id, theirs.id}


async def test_get_and_check_out_by_id(client, db):
    registration = register(db, create_event(db))
    attendance_id = (await check_in(client, registration.id, sessionId="keynote")).json()["attendance"]["id"]

    r = await client.get(f"/attendance/{attendance_id}", headers=auth_headers())
    assert r.status_code == 200
    assert r.json()["attendance"]["sessionId"] == "keynote"
    assert r.json()["attendance"]["checkOutTime"] is None

    bad = await client.put(f"/attendance/{attendance_id}", json={"action": "checkin"}, headers=auth_headers())
    assert bad.json()["reasonCode"] == "INVALID_ACTION"

    out = await client.put(f"/attendance/{attendance_id}", json={"action": "checkout"}, headers=auth_headers())
    assert out.status_code == 200, out.json()
    assert out.json()["message"] == "Check-out successful"
    assert out.json()["attendance"]["checkOutTime"]

    again = await client.put(f"/attendance/{attendance_id}", json={"action": "checkout"}, headers=auth_headers())
    assert again.status_code == 400
    assert again.json()["error"] == "Already checked out"


async def test_unknown_attendance_id(client):
    r = await client.get("/attendance/nope", headers=auth_headers())
    assert r.status_code == 404
    assert r.json()["reasonCode"] == "ATTENDANCE_NOT_FOUND"

    r = await client.put("/attendance/nope", json={"action": "checkout"}, headers=auth_headers())
    assert r.status_code == 404


async def test_attendance_record_of_other_organizer_forbidden(client, db):
    registration = register(db, create_event(db, owner_id="organizer-2"))
    attendance_id = (
        await check_in(client, registration.id, headers=auth_headers("organizer-2"))
    ).json()["attendance"]["id"]

    assert (await client.get(f"/attendance/{attendance_id}", headers=auth_headers())).status_code == 403
    r = await client.put(f"/attendance/{attendance_id}", json={"action": "checkout"}, headers=auth_headers())
    assert r.status_code == 403


async def test_manual_decisions_are_audited(client, db):
    event = create_event(db)
    registration = register(db, event)
    await check_in(client, registration.id)
    await check_in(client, registration.id)

    logs = (await client.get("/admin/audit", params={"event_id": event.id}, headers=auth_headers())).json()
    assert [x["reasonCode"] for x in logs] == ["ALREADY_CHECKED_IN", "OK_MANUAL"]
    # no ticket was issued for this registration
    assert {x["ticketId"] for x in logs} == {None}


async def test_attendance_endpoints_require_operator(client):
    assert (await client.get("/attendance")).status_code == 401
    assert (await client.post("/attendance", json={"registrationId": "x"})).status_code == 401
