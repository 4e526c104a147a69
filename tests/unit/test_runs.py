"""Tests for SyncRun transitions and ledger conversion."""
from datetime import datetime, timezone

import pytest

from hackportal.sync import runs
from hackportal.sync.runs import RunStateError, SyncRun

STARTED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
FINISHED = datetime(2025, 3, 1, 12, 0, 2, tzinfo=timezone.utc)


def _run(**kwargs):
    return SyncRun(table_name="events", started_at=STARTED, **kwargs)


class TestSyncRun:
    def test_starts_running(self):
        run = _run()
        assert run.status == runs.RUNNING
        assert not run.is_terminal

    def test_finish_moves_to_terminal(self):
        run = _run()
        run.records_written = 47
        run.finish(runs.PARTIAL_FAILURE, finished_at=FINISHED, duration_ms=2000, error_details="3 bad")
        assert run.status == runs.PARTIAL_FAILURE
        assert run.finished_at == FINISHED
        assert run.duration_ms == 2000
        assert run.error_details == "3 bad"

    def test_finish_twice_raises(self):
        run = _run().finish(runs.SUCCESS, finished_at=FINISHED, duration_ms=1)
        with pytest.raises(RunStateError):
            run.finish(runs.FAILURE, finished_at=FINISHED, duration_ms=1)

    def test_finish_requires_terminal_status(self):
        with pytest.raises(RunStateError):
            _run().finish(runs.RUNNING, finished_at=FINISHED, duration_ms=1)

    def test_terminal_run_is_frozen(self):
        run = _run().finish(runs.SUCCESS, finished_at=FINISHED, duration_ms=1)
        with pytest.raises(RunStateError):
            run.records_written = 5
        with pytest.raises(RunStateError):
            run.status = runs.RUNNING

    def test_error_details_truncated(self):
        run = _run().finish(runs.FAILURE, finished_at=FINISHED, duration_ms=1, error_details="x" * 5000)
        assert len(run.error_details) == runs.MAX_ERROR_DETAILS

    def test_to_log(self):
        run = _run(trigger="manual")
        run.records_fetched = 50
        run.records_written = 47
        run.records_changed = 10
        run.errors_count = 3
        run.finish(runs.PARTIAL_FAILURE, finished_at=FINISHED, duration_ms=2000)
        log = run.to_log()
        assert log.table_name == "events"
        assert log.trigger == "manual"
        assert log.status == "partial_failure"
        assert log.records_synced == 47
        assert log.errors_count == 3
        assert log.finished_at == FINISHED
        assert log.id is None

    def test_summary(self):
        run = _run().finish(runs.SUCCESS, finished_at=FINISHED, duration_ms=5)
        summary = run.summary()
        assert summary["table"] == "events"
        assert summary["finished_at"] == FINISHED.isoformat()
