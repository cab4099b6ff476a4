import os

os.environ.setdefault("TICKET_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from eventgate.config import Settings
from eventgate.db import Base
from eventgate.issuer import TicketIssuer
from tests.helpers import build_app

SECRET = os.environ["TICKET_SIGNING_SECRET"]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'eventgate.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def settings():
    return Settings(signing_secret=SECRET)


@pytest.fixture
def issuer():
    return TicketIssuer(SECRET)


@pytest.fixture
def app(settings, session_factory):
    return build_app(settings, session_factory)


@pytest_asyncio.fixture(scope="function")
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test", timeout=10.0) as c:
        yield c
