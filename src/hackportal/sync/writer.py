"""
LocalStoreWriter: applies fetched Airtable records to the local mirror.

Flow for one batch:
  1. Normalize each record through the table mapping
  2. Upsert it keyed by (table, Airtable record id) inside a SAVEPOINT
  3. Commit once, then drop the table's cache namespace

Per-record failures (RecordValidationError, WriteConflict) are counted and
the rest of the batch continues. A record that fails validation still exists
upstream, so its stored row (if any) keeps last_seen_at current. Rows missing
from a fetch are left alone; deleting them is the separate purge_stale()
operation.

A CommitGate lets the scheduler abandon an apply that outlived its cycle
timeout: the batch is rolled back instead of committed.

Idempotency: uses the (table_name, external_id) unique constraint. When the
stored content hash matches, the row's content and synced_at are not
touched and the record doesn't count as changed.
"""
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from hackportal.airtable.client import SourceRecord
from hackportal.airtable.mappings import TableMapping, get_mapping
from hackportal.models.records import SyncedRecord
from hackportal.models.types import utc_now
from hackportal.sync import runs
from hackportal.sync.errors import RecordValidationError, WriteConflict

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGES = 20


@dataclass
class ApplyResult:
    written: int = 0
    changed: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    abandoned: bool = False

    def add_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_ERROR_MESSAGES:
            self.error_messages.append(message)

    @property
    def error_details(self) -> Optional[str]:
        if not self.error_messages:
            return None
        details = "; ".join(self.error_messages)
        if self.errors > len(self.error_messages):
            details += f"; ... {self.errors - len(self.error_messages)} more"
        return details


def status_for(batch_size: int, result: ApplyResult) -> str:
    """Terminal status of a cycle from its apply outcome."""
    if result.errors == 0:
        return runs.SUCCESS
    if result.written > 0:
        return runs.PARTIAL_FAILURE
    return runs.FAILURE if batch_size > 0 else runs.SUCCESS


def content_hash(fields_json: str) -> str:
    return hashlib.sha256(fields_json.encode("utf-8")).hexdigest()


def encode_fields(fields: dict) -> str:
    """Stable JSON: same content always produces the same text and hash."""
    return json.dumps(fields, sort_keys=True, default=str, separators=(",", ":"))


class CommitGate:
    """
    One-shot decision between committing an apply and abandoning it.

    The writer thread calls claim_commit() right before committing; the
    scheduler calls abandon() when the cycle times out. Whichever comes first
    wins, so a timed-out cycle either wrote nothing or is reported with the
    result it actually committed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._decision: Optional[str] = None

    @property
    def abandoned(self) -> bool:
        return self._decision == "abandon"

    def claim_commit(self) -> bool:
        return self._decide("commit")

    def abandon(self) -> bool:
        return self._decide("abandon")

    def _decide(self, decision: str) -> bool:
        with self._lock:
            if self._decision is None:
                self._decision = decision
            return self._decision == decision


class LocalStoreWriter:
    """Owns SyncedRecord contents. Synchronous; the scheduler runs it in a worker thread."""

    def __init__(self, engine, cache=None, clock: Callable[[], datetime] = utc_now):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            cache: TTLCache whose table namespace is dropped after writes.
            clock: Timezone-aware UTC "now" source (tests pass a fake one).
        """
        self.engine = engine
        self.cache = cache
        self._clock = clock

    def apply(
        self,
        table: str,
        records: Iterable[SourceRecord],
        gate: Optional[CommitGate] = None,
    ) -> ApplyResult:
        """Upsert a batch of records for one table.

        Args:
            table: Local table name.
            records: Fetched records, in any order.
            gate: When given and abandoned before the commit, the whole batch
                is rolled back.

        Returns:
            ApplyResult with written/changed/error counts (abandoned=True and
            zero counts when the batch was rolled back).
        """
        mapping = get_mapping(table)
        result = ApplyResult()
        now = self._clock()

        with Session(self.engine) as s:
            for record in records:
                if gate is not None and gate.abandoned:
                    break
                try:
                    self._apply_one(s, mapping, record, now, result)
                except (RecordValidationError, WriteConflict) as exc:
                    logger.warning("%s %s skipped: %s", table, record.external_id, exc)
                    result.add_error(f"{record.external_id}: {exc}")
            if gate is not None and not gate.claim_commit():
                s.rollback()
                logger.warning("Apply of %s abandoned after timeout; batch rolled back", table)
                return ApplyResult(abandoned=True)
            s.commit()

        if result.written and self.cache is not None:
            self.cache.invalidate_namespace(table)
            self.cache.invalidate_namespace("dashboard")
        return result

    def stale_rows(self, table: str, seen_before: datetime) -> List[SyncedRecord]:
        """Rows no fetch has confirmed since `seen_before` (soft-stale)."""
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncedRecord)
                    .where(SyncedRecord.table_name == table)
                    .where(SyncedRecord.last_seen_at < seen_before)
                    .order_by(SyncedRecord.last_seen_at)
                ).all()
            )

    def purge_stale(self, table: str, seen_before: datetime) -> int:
        """Delete soft-stale rows. Explicit operation; the scheduler never calls it."""
        with Session(self.engine) as s:
            doomed = s.exec(
                select(SyncedRecord)
                .where(SyncedRecord.table_name == table)
                .where(SyncedRecord.last_seen_at < seen_before)
            ).all()
            for row in doomed:
                s.delete(row)
            s.commit()
            count = len(doomed)

        if count:
            logger.info("Purged %d stale %s rows (not seen since %s)", count, table, seen_before)
            if self.cache is not None:
                self.cache.invalidate_namespace(table)
                self.cache.invalidate_namespace("dashboard")
        return count

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _apply_one(
        self,
        s: Session,
        mapping: TableMapping,
        record: SourceRecord,
        now: datetime,
        result: ApplyResult,
    ) -> None:
        try:
            normalized = mapping.normalize(record.fields)
        except RecordValidationError as exc:
            self._confirm_seen(s, mapping, record, now)
            raise RecordValidationError(str(exc), external_id=record.external_id) from exc
        except Exception as exc:
            # Unexpected parser failure on one malformed field
            self._confirm_seen(s, mapping, record, now)
            raise RecordValidationError(
                f"{type(exc).__name__}: {exc}", external_id=record.external_id
            ) from exc

        fields_json = encode_fields(normalized)
        digest = content_hash(fields_json)
        version = record.last_modified.isoformat() if record.last_modified else digest

        try:
            with s.begin_nested():
                existing = s.exec(
                    select(SyncedRecord)
                    .where(SyncedRecord.table_name == mapping.name)
                    .where(SyncedRecord.external_id == record.external_id)
                ).first()

                changed = True
                if existing is None:
                    s.add(SyncedRecord(
                        table_name=mapping.name,
                        external_id=record.external_id,
                        fields_json=fields_json,
                        content_hash=digest,
                        source_version=version,
                        first_synced_at=now,
                        synced_at=now,
                        last_seen_at=now,
                    ))
                elif existing.content_hash == digest:
                    changed = False
                    existing.last_seen_at = now
                    if existing.source_version != version:
                        existing.source_version = version
                    s.add(existing)
                else:
                    existing.fields_json = fields_json
                    existing.content_hash = digest
                    existing.source_version = version
                    existing.synced_at = now
                    existing.last_seen_at = now
                    s.add(existing)
                s.flush()
        except SQLAlchemyError as exc:
            raise WriteConflict(
                f"store rejected row: {type(exc).__name__}", external_id=record.external_id
            ) from exc

        result.written += 1
        if changed:
            result.changed += 1

    def _confirm_seen(self, s: Session, mapping: TableMapping, record: SourceRecord, now: datetime) -> None:
        """Move last_seen_at of a stored row whose new version failed validation."""
        try:
            with s.begin_nested():
                existing = s.exec(
                    select(SyncedRecord)
                    .where(SyncedRecord.table_name == mapping.name)
                    .where(SyncedRecord.external_id == record.external_id)
                ).first()
                if existing is not None:
                    existing.last_seen_at = now
                    s.add(existing)
                    s.flush()
        except SQLAlchemyError:
            logger.warning(
                "Could not refresh last_seen_at of %s %s", mapping.name, record.external_id,
                exc_info=True,
            )
