import pytest
import os
import random
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import journey_engine.models  # noqa: F401
from journey_engine.core.config import settings
from journey_engine.core.deps import get_db, get_runtime
from journey_engine.db.base import Base
from journey_engine.main import app
from journey_engine.services.customer_directory import InMemoryCustomerDirectory
from journey_engine.services.journey_executor import JourneyRuntime
from journey_engine.services.journey_store import save_journey
from journey_engine.services.messaging_provider import MessageSendResult

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingMessenger:
    name = "recording"

    def __init__(self):
        self.sent = []
        self.failures_remaining = 0
        self.on_send = None

    def send_templated_message(self, request):
        if self.on_send is not None:
            self.on_send(request)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            return MessageSendResult(success=False, provider=self.name, error="provider unavailable")
        self.sent.append(request)
        return MessageSendResult(success=True, provider=self.name, message_id=f"wamid-{len(self.sent)}")


def _make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "journey_backup_dir", str(tmp_path / "backups"))
    monkeypatch.setattr(settings, "whatsapp_access_token", None)
    monkeypatch.setattr(settings, "whatsapp_phone_number_id", None)


@pytest.fixture()
def db_session():
    engine = _make_engine()
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock():
    return FakeClock(START)


@pytest.fixture()
def directory():
    return InMemoryCustomerDirectory()


@pytest.fixture()
def messenger():
    return RecordingMessenger()


@pytest.fixture()
def runtime(db_session, clock, directory, messenger):
    return JourneyRuntime(
        db=db_session,
        directory=directory,
        mutations=directory,
        messenger=messenger,
        clock=clock,
        rng=random.Random(7),
    )


@pytest.fixture()
def create_journey(db_session):
    def _create(nodes, edges, *, name="Welcome flow", settings_json=None, status="ACTIVE"):
        journey = save_journey(
            db_session,
            name=name,
            nodes=nodes,
            edges=edges,
            settings_json=settings_json,
            status=status,
        )
        db_session.commit()
        return journey

    return _create


@pytest.fixture()
def test_context(clock, directory, messenger):
    engine = _make_engine()
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    def override_get_runtime(db: Session = Depends(get_db)):
        return JourneyRuntime(
            db=db,
            directory=directory,
            mutations=directory,
            messenger=messenger,
            clock=clock,
            rng=random.Random(11),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = override_get_runtime

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
