from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import List

import pytest

from chartflow.database import create_db_engine, create_session_factory, import_all_models
from chartflow.models.base import Base
from chartflow.processing.events.event_bus import EventBus
from chartflow.processing.schemas.payload import ChartInfo


@pytest.fixture()
def engine():
    eng = create_db_engine("sqlite:///:memory:")
    import_all_models()
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture()
def session(engine):
    SessionLocal = create_session_factory(engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def session_scope(session):
    """Stand-in for get_db_session that hands every caller the test session."""

    @contextmanager
    def _scope():
        yield session

    return _scope


@pytest.fixture()
def fake_downloader(tmp_path):
    created: List[Path] = []

    @contextmanager
    def _download(url: str, filename: str):
        path = tmp_path / f"dl_{len(created)}_{filename}"
        path.write_text(url, encoding="utf-8")
        created.append(path)
        try:
            yield path
        finally:
            path.unlink()

    _download.created = created
    return _download


@pytest.fixture()
def recorded_events():
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append)
    return bus, events


@pytest.fixture()
def chart_info() -> ChartInfo:
    return ChartInfo(
        chart_number="chart-1",
        mrn="MRN-001",
        facility="General Hospital",
        specialty="Emergency",
        date_of_service="2026-09-01",
        provider="Dr. Lee",
    )


