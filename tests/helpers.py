import os
from datetime import datetime, timedelta, timezone

from eventgate.auth import mint_operator_token
from eventgate.db import get_db
from eventgate.issuer import issue_ticket
from eventgate.main import create_app
from eventgate.models import Event, Registration, User

SECRET = os.environ["TICKET_SIGNING_SECRET"]
ORGANIZER_ID = "organizer-1"


def build_app(settings, session_factory):
    app = create_app(settings)

    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    return app


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def auth_headers(user_id: str = ORGANIZER_ID, role: str = "EVENT_ORGANIZER") -> dict:
    return {"Authorization": f"Bearer {mint_operator_token(user_id, role, SECRET)}"}


def create_event(db, starts_in=timedelta(hours=-1), duration=timedelta(hours=4), status="PUBLISHED",
                 owner_id=ORGANIZER_ID, name="Test Event") -> Event:
    if db.get(User, owner_id) is None:
        db.add(User(id=owner_id, name="Organizer", email=f"{owner_id}@example.com", role="EVENT_ORGANIZER"))
    start = now_utc() + starts_in
    event = Event(name=name, start_date=start, end_date=start + duration, status=status, created_by_id=owner_id)
    db.add(event)
    db.commit()
    return event


def register(db, event: Event, name="Ada Lovelace", email=None, status="CONFIRMED") -> Registration:
    user = User(name=name, email=email or f"{name.split()[0].lower()}-{event.id[:6]}@example.com")
    db.add(user)
    registration = Registration(event_id=event.id, user=user, status=status)
    db.add(registration)
    db.commit()
    return registration


def ticketed(db, issuer, **event_kwargs):
    """Event + confirmed registration + issued ticket."""
    event = create_event(db, **event_kwargs)
    registration = register(db, event)
    ticket = issue_ticket(db, registration, issuer)
    return event, registration, ticket


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls we make."""

    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.ttls = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def expire(self, key, ttl):
        self.ttls[key] = ttl

    async def aclose(self):
        pass
