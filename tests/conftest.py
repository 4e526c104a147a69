"""Shared test fixtures."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List, Optional, Tuple

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from hackportal.models.records import SyncedRecord  # noqa: F401
from hackportal.models.sync import SyncLog  # noqa: F401

from hackportal.airtable.client import SourceRecord
from hackportal.cache import TTLCache
from hackportal.config import Settings
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.scheduler import SyncContext, SyncScheduler
from hackportal.sync.writer import LocalStoreWriter


class FakeClock:
    """Aware-UTC clock that moves one second forward on every call.

    Starts two hours in the past so rows it stamps are older than an hour
    but inside the 24h metrics window.
    """

    def __init__(self, start: Optional[datetime] = None):
        if start is None:
            start = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=2)
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeSource:
    """
    Stands in for AirtableClient: serves pre-built pages per Airtable table.

    failures[table] = (page_index, exc) raises exc instead of serving that
    page. gates[table] is an asyncio.Event awaited before the first page.
    """

    def __init__(self):
        self.pages: Dict[str, List[List[SourceRecord]]] = {}
        self.failures: Dict[str, Tuple[int, Exception]] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, Optional[datetime]]] = []
        self.closed = False

    async def fetch_all(self, table, since=None, last_modified_field=None):
        self.calls.append((table, since))
        gate = self.gates.get(table)
        if gate is not None:
            await gate.wait()
        failure = self.failures.get(table)
        pages = self.pages.get(table, [])
        for index, page in enumerate(pages):
            if failure is not None and failure[0] == index:
                raise failure[1]
            for record in page:
                yield record
        if failure is not None and failure[0] >= len(pages):
            raise failure[1]

    async def aclose(self):
        self.closed = True


def _event_record(n: int, **overrides) -> SourceRecord:
    """A valid events record with a stable Airtable-style id."""
    fields = {
        "event_name": f"Hack Night {n:03d}",
        "email": f"organizer{n}@example.com",
        "event_format": "24-hours",
        "triage_status": "approved",
        "estimated_attendee_count": 100,
        "country": "Canada",
    }
    fields.update(overrides)
    return SourceRecord(external_id=f"rec{n:014d}", fields=fields)


def _attendee_record(n: int, event_id: str, **overrides) -> SourceRecord:
    fields = {"email": f"hacker{n}@example.com", "first_name": f"Hacker{n}", "event": [event_id]}
    fields.update(overrides)
    return SourceRecord(external_id=f"att{n:014d}", fields=fields)


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="cache")
def cache_fixture() -> TTLCache:
    return TTLCache(default_ttl=60)


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="fake_source")
def fake_source_fixture() -> FakeSource:
    return FakeSource()


@pytest.fixture(name="event_record")
def event_record_fixture():
    return _event_record


@pytest.fixture(name="attendee_record")
def attendee_record_fixture():
    return _attendee_record


@pytest.fixture(name="make_sync")
def make_sync_fixture(engine, cache, clock, fake_source):
    """Factory for a SyncScheduler wired to the in-memory store and FakeSource."""

    def make(tables=("events",), **overrides) -> SyncScheduler:
        settings = Settings(
            sync_tables=list(tables),
            cycle_timeout_seconds=overrides.pop("cycle_timeout_seconds", 5.0),
            **overrides,
        )
        context = SyncContext(
            settings=settings,
            source=fake_source,
            writer=LocalStoreWriter(engine, cache=cache, clock=clock),
            ledger=SyncLedger(engine),
            cache=cache,
            clock=clock,
        )
        return SyncScheduler(context)

    return make
