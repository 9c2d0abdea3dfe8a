from __future__ import annotations

import shutil
import threading
from collections.abc import Generator
from dataclasses import replace
from pathlib import Path
from typing import Any, cast
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine

from er_core.config import settings
from er_core.container import Container, build_container
from er_core.infrastructure.db.engine import get_engine
from er_core.infrastructure.db.models_sqlalchemy import Base, EncounterEvent, Hospital
from er_core.infrastructure.db.session import SessionFactory, make_session_scope, make_sessionmaker
from er_core.infrastructure.realtime.broadcast_hub import BroadcastMessage


@pytest.fixture
def tmp_path() -> Generator[Path, None, None]:
    base = Path("pytest_artifacts")
    base.mkdir(parents=True, exist_ok=True)
    path = base / uuid4().hex
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def make_engine(db_path: Path) -> Engine:
    engine = get_engine(f"sqlite:///{db_path.as_posix()}", echo=False)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    db_engine = make_engine(tmp_path / "er_core.db")
    try:
        yield db_engine
    finally:
        db_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> SessionFactory:
    return make_session_scope(make_sessionmaker(engine))


def seed_hospital(session_factory: SessionFactory, slug: str = "general") -> int:
    with session_factory() as session:
        hospital = Hospital(name=f"{slug.title()} Hospital", slug=slug)
        session.add(hospital)
        session.flush()
        return int(hospital.id)


@pytest.fixture
def hospital_id(session_factory: SessionFactory) -> int:
    return seed_hospital(session_factory)


def make_container(session_factory: SessionFactory) -> Container:
    test_settings = replace(
        settings,
        background_jobs_enabled=False,
        dispatch_backoff_seconds=0.0,
        dispatch_attempt_timeout_seconds=0.0,
        event_sweep_grace_seconds=0.0,
    )
    return build_container(session_factory=session_factory, app_settings=test_settings)


@pytest.fixture
def container(session_factory: SessionFactory) -> Generator[Container, None, None]:
    app = make_container(session_factory)
    try:
        yield app
    finally:
        app.stop_background()


def stored_events(session_factory: SessionFactory, encounter_id: int) -> list[EncounterEvent]:
    with session_factory() as session:
        stmt = (
            select(EncounterEvent)
            .where(EncounterEvent.encounter_id == encounter_id)
            .order_by(EncounterEvent.id.asc())
        )
        return list(session.execute(stmt).scalars())


def stored_event_types(session_factory: SessionFactory, encounter_id: int) -> list[str]:
    return [cast(str, event.type) for event in stored_events(session_factory, encounter_id)]


class RecordingBroadcaster:
    """Broadcaster double that records every publish call."""

    def __init__(self, fail_times: int = 0) -> None:
        self.calls: list[tuple[list[str], str, dict[str, Any]]] = []
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def publish(self, topics, event_name: str, payload: dict[str, Any]) -> int:
        with self._lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ConnectionError("push channel unavailable")
            self.calls.append((list(topics), event_name, payload))
        return 1

    def event_names(self) -> list[str]:
        with self._lock:
            return [name for _topics, name, _payload in self.calls]


class Inbox:
    """Subscriber callback collecting broadcast messages."""

    def __init__(self) -> None:
        self.messages: list[BroadcastMessage] = []
        self._lock = threading.Lock()

    def __call__(self, message: BroadcastMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def events(self) -> list[str]:
        with self._lock:
            return [message.event for message in self.messages]

    def event_ids(self) -> list[int]:
        with self._lock:
            return [message.payload["eventId"] for message in self.messages]
