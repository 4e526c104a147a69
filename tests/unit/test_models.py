"""Tests for model timestamp columns."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import StatementError
from sqlmodel import Session, select

from hackportal.models.records import SyncedRecord
from hackportal.models.sync import SyncLog
from hackportal.models.types import utc_now


def test_utc_now_is_aware():
    assert utc_now().tzinfo is timezone.utc


class TestSyncedRecordTimestamps:
    def test_defaults_are_aware_and_round_trip(self, test_session: Session):
        test_session.add(SyncedRecord(table_name="events", external_id="recA"))
        test_session.commit()

        row = test_session.exec(select(SyncedRecord)).one()
        test_session.expire(row)
        assert row.last_seen_at.tzinfo is not None
        assert row.last_seen_at.utcoffset().total_seconds() == 0

    def test_naive_datetime_is_rejected(self, test_session: Session):
        test_session.add(SyncedRecord(
            table_name="events",
            external_id="recB",
            last_seen_at=datetime(2025, 3, 1, 12, 0),
        ))
        with pytest.raises(StatementError, match="timezone"):
            test_session.commit()

    def test_other_offsets_stored_as_utc(self, test_session: Session):
        toronto = timezone(timedelta(hours=-5))
        seen = datetime(2025, 3, 1, 7, 0, tzinfo=toronto)
        test_session.add(SyncedRecord(table_name="events", external_id="recC", last_seen_at=seen))
        test_session.commit()

        row = test_session.exec(select(SyncedRecord)).one()
        test_session.expire(row)
        assert row.last_seen_at == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_sync_log_rejects_naive_start(test_session: Session):
    test_session.add(SyncLog(
        table_name="events",
        status="success",
        started_at=datetime(2025, 3, 1, 12, 0),
        finished_at=datetime(2025, 3, 1, 12, 0, 1, tzinfo=timezone.utc),
    ))
    with pytest.raises(StatementError):
        test_session.commit()
