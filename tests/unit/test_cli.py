"""Tests for the `python -m hackportal` commands."""
from unittest.mock import patch

import pytest
from sqlmodel import Session, select

from hackportal.__main__ import main
from hackportal.config import Settings
from hackportal.models.records import SyncedRecord
from hackportal.sync.errors import SourceUnavailable
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.scheduler import SyncContext
from hackportal.sync.writer import LocalStoreWriter


@pytest.fixture(name="cli_context")
def cli_context_fixture(engine, cache, fake_source):
    return SyncContext(
        settings=Settings(sync_tables=["events", "venues"]),
        source=fake_source,
        writer=LocalStoreWriter(engine, cache=cache),
        ledger=SyncLedger(engine),
        cache=cache,
    )


def _run(argv, engine, context=None):
    with patch("hackportal.db.engine.get_engine", return_value=engine), \
            patch("hackportal.sync.scheduler.build_context", return_value=context):
        return main(argv)


class TestSyncCommand:
    def test_all_tables_succeed(self, engine, cli_context, fake_source, event_record, capsys):
        fake_source.pages["events"] = [[event_record(1), event_record(2)]]
        fake_source.pages["venues"] = [[]]

        assert _run(["sync"], engine, cli_context) == 0

        out = capsys.readouterr().out
        assert "events" in out
        assert "venues" in out
        assert "success" in out
        assert fake_source.closed
        assert len(cli_context.ledger.recent()) == 2

    def test_selected_table_only(self, engine, cli_context, fake_source):
        assert _run(["sync", "venues"], engine, cli_context) == 0
        assert [table for table, _ in fake_source.calls] == ["venues"]

    def test_failure_exit_code(self, engine, cli_context, fake_source, capsys):
        fake_source.failures["events"] = (0, SourceUnavailable("source unavailable: HTTP 503 after 5 retries"))
        assert _run(["sync", "events"], engine, cli_context) == 1
        assert "source unavailable" in capsys.readouterr().out

    def test_unknown_table(self, engine, cli_context, fake_source):
        assert _run(["sync", "sponsors"], engine, cli_context) == 2
        assert fake_source.calls == []


class TestPurgeCommand:
    def test_purges_rows_not_seen_recently(self, engine, clock, event_record, capsys):
        # FakeClock stamps rows two hours back, older than the one hour cutoff
        LocalStoreWriter(engine, clock=clock).apply("events", [event_record(1), event_record(2)])

        assert _run(["purge-stale", "events", "--older-than-hours", "1"], engine) == 0

        assert "Deleted 2 stale events" in capsys.readouterr().out
        with Session(engine) as s:
            assert s.exec(select(SyncedRecord)).all() == []

    def test_requires_age(self, engine):
        with pytest.raises(SystemExit):
            _run(["purge-stale", "events"], engine)
