"""
SyncScheduler: drives Airtable → local store reconciliation cycles.

One APScheduler interval job per table (default every second), all on the
same asyncio loop. Tables run concurrently with each other but never with
themselves: TableSyncState.running is checked and set with no await in
between, so a scheduled tick and a manual trigger for the same table can't
both start. The loser gets ConcurrentRunRejected and nothing is queued.

Flow for one cycle:
  1. Claim the table (running=True), create SyncRun(status="running")
  2. Fetch every page from Airtable
  3. Apply the whole batch on a store-writer thread (LocalStoreWriter)
  4. Finish the run, append it to the ledger, update TableSyncState
  5. Release the table

Steps 2 and 3 share one deadline, cycle_timeout_seconds. Nothing is written
until the fetch has finished, so a fetch that dies on any page leaves the
store untouched; an apply still running at the deadline is abandoned through
its CommitGate and rolled back. Every exception inside a cycle ends up
as a "failure" run; only ConcurrentRunRejected leaves run_cycle().
"""
import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hackportal.airtable.client import AirtableClient, SourceRecord
from hackportal.airtable.mappings import TableMapping, get_mapping
from hackportal.cache import TTLCache
from hackportal.config import Settings
from hackportal.models.types import utc_now
from hackportal.sync import runs
from hackportal.sync.errors import (
    ConcurrentRunRejected,
    CycleTimeout,
    SchedulerStopped,
    SourceUnavailable,
)
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.runs import SyncRun, TableSyncState
from hackportal.sync.writer import CommitGate, LocalStoreWriter, status_for

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Everything a cycle needs, passed in instead of read from globals."""

    settings: Settings
    source: Any  # AirtableClient, or a fake with the same fetch_all()
    writer: LocalStoreWriter
    ledger: SyncLedger
    cache: TTLCache
    clock: Callable[[], datetime] = utc_now
    monotonic: Callable[[], float] = time.monotonic


@dataclass
class TriggerResult:
    accepted: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)


def build_context(engine, settings: Settings) -> SyncContext:
    """Wire the production collaborators from settings."""
    cache = TTLCache(default_ttl=settings.cache_ttl_seconds)
    return SyncContext(
        settings=settings,
        source=AirtableClient.from_settings(settings),
        writer=LocalStoreWriter(engine, cache=cache),
        ledger=SyncLedger(engine),
        cache=cache,
    )


class SyncScheduler:
    """Owns TableSyncState for every configured table."""

    def __init__(self, context: SyncContext, tables: Optional[Sequence[str]] = None):
        """
        Args:
            context: Collaborators and clocks.
            tables: Tables to reconcile. Defaults to settings.sync_tables.

        Raises:
            KeyError: if a table has no mapping.
        """
        self.ctx = context
        table_names = list(tables or context.settings.sync_tables)
        for name in table_names:
            get_mapping(name)
        self.states: Dict[str, TableSyncState] = {
            name: TableSyncState(table_name=name) for name in table_names
        }
        self._accepting = True
        self._inflight: Set[asyncio.Task] = set()
        self._jobs: Optional[AsyncIOScheduler] = None
        self._store_executor = ThreadPoolExecutor(
            max_workers=_store_workers(context.writer.engine, len(table_names)),
            thread_name_prefix="store-writer",
        )

    # ─── Public API ───────────────────────────────────────────────────────────

    async def run_cycle(self, table: str, trigger: str = "scheduled") -> SyncRun:
        """Run one cycle for `table` and return its terminal SyncRun.

        Raises:
            KeyError: unknown table.
            ConcurrentRunRejected: a cycle for `table` is already running
                (SchedulerStopped once shutdown has begun).
        """
        state = self._claim(table)
        return await self._run_claimed(state, trigger)

    def trigger(self, tables: Optional[Sequence[str]] = None) -> TriggerResult:
        """Manual trigger: start cycles in the background and return at once.

        Must be called from inside the running event loop. Tables already
        running are reported as rejected, not queued.

        Raises:
            KeyError: if any requested table is unknown.
        """
        targets = list(tables) if tables else list(self.states)
        for table in targets:
            if table not in self.states:
                raise KeyError(table)

        result = TriggerResult()
        loop = asyncio.get_running_loop()
        for table in targets:
            try:
                state = self._claim(table)
            except ConcurrentRunRejected as exc:
                logger.info("Manual sync of %s rejected: %s", table, exc)
                result.rejected[table] = (
                    "shutting down" if isinstance(exc, SchedulerStopped) else "already running"
                )
                continue
            task = loop.create_task(self._run_claimed(state, "manual"))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            result.accepted.append(table)
        return result

    async def run_all(self, trigger: str = "manual") -> List[SyncRun]:
        """Run one cycle per table concurrently (CLI path)."""
        return list(await asyncio.gather(*(self.run_cycle(t, trigger) for t in self.states)))

    def is_running(self, table: Optional[str] = None) -> bool:
        if table is not None:
            return self.states[table].running
        return any(state.running for state in self.states.values())

    def start(self) -> AsyncIOScheduler:
        """Register the interval jobs and start them on the current loop."""
        self._jobs = build_scheduler(self)
        self._jobs.start()
        logger.info(
            "Sync scheduler started: %s every %ss",
            ", ".join(self.states), self.ctx.settings.sync_interval_seconds,
        )
        return self._jobs

    async def shutdown(self, wait: bool = True) -> None:
        """Stop starting cycles; let in-flight ones finish."""
        self._accepting = False
        if self._jobs is not None and self._jobs.running:
            self._jobs.shutdown(wait=False)
        current = asyncio.current_task()
        pending = [t for t in self._inflight if t is not current and not t.done()]
        if wait and pending:
            logger.info("Waiting for %d in-flight sync cycle(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        self._store_executor.shutdown(wait=wait)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Per-table job summaries for the health endpoints."""
        summaries = []
        for name, state in self.states.items():
            last = state.last_run
            next_run = None
            if self._jobs is not None:
                job = self._jobs.get_job(_job_id(name))
                if job is not None and job.next_run_time is not None:
                    next_run = job.next_run_time.isoformat()
            summaries.append({
                "table": name,
                "running": state.running,
                "current_run_started_at": (
                    state.current_run.started_at.isoformat() if state.current_run else None
                ),
                "last_status": last.status if last else None,
                "last_run_at": last.started_at.isoformat() if last else None,
                "last_error": last.error_details if last else None,
                "last_success_at": state.last_success_at.isoformat() if state.last_success_at else None,
                "consecutive_failures": state.consecutive_failures,
                "interval_seconds": self.ctx.settings.sync_interval_seconds,
                "next_run_at": next_run,
            })
        return summaries

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _claim(self, table: str) -> TableSyncState:
        """Atomic check-and-set of the per-table running flag."""
        state = self.states[table]
        if not self._accepting:
            raise SchedulerStopped(table)
        if state.running:
            raise ConcurrentRunRejected(table)
        state.running = True
        state.runs_started += 1
        return state

    async def _scheduled_cycle(self, table: str) -> None:
        """APScheduler job body. Never raises."""
        try:
            await self.run_cycle(table, trigger="scheduled")
        except ConcurrentRunRejected as exc:
            logger.debug("Scheduled sync skipped: %s", exc)

    async def _run_claimed(self, state: TableSyncState, trigger: str) -> SyncRun:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)

        run = SyncRun(table_name=state.table_name, started_at=self.ctx.clock(), trigger=trigger)
        state.current_run = run
        started = self.ctx.monotonic()
        logger.info("Sync %s starting (%s)", state.table_name, trigger)

        try:
            try:
                status, details = await self._execute(state, run)
            except (SourceUnavailable, CycleTimeout) as exc:
                logger.error("Sync %s failed: %s", state.table_name, exc)
                status, details = runs.FAILURE, str(exc)
            except asyncio.CancelledError:
                self._finish(state, run, runs.FAILURE, "cycle cancelled", started)
                self._record_detached(run)
                raise
            except Exception as exc:
                logger.exception("Sync %s crashed", state.table_name)
                status, details = runs.FAILURE, f"{type(exc).__name__}: {exc}"

            self._finish(state, run, status, details, started)
            await self._record(run)
            return run
        finally:
            state.current_run = None
            state.running = False
            if task is not None:
                self._inflight.discard(task)

    async def _execute(self, state: TableSyncState, run: SyncRun):
        mapping = get_mapping(state.table_name)
        since = self._since_for(state, mapping)
        timeout = self.ctx.settings.cycle_timeout_seconds
        deadline = self.ctx.monotonic() + timeout

        try:
            records = await asyncio.wait_for(self._fetch(mapping, since), timeout=timeout)
        except asyncio.TimeoutError:
            raise CycleTimeout(f"cycle timed out after {timeout:g}s fetching '{mapping.airtable_table}'")
        run.records_fetched = len(records)

        gate = CommitGate()
        loop = asyncio.get_running_loop()
        applying = loop.run_in_executor(
            self._store_executor, lambda: self.ctx.writer.apply(state.table_name, records, gate=gate)
        )
        try:
            result = await asyncio.wait_for(
                asyncio.shield(applying), timeout=max(0.0, deadline - self.ctx.monotonic())
            )
        except asyncio.TimeoutError:
            if gate.abandon():
                applying.add_done_callback(_log_late_failure)
                raise CycleTimeout(
                    f"cycle timed out after {timeout:g}s writing {len(records)} '{state.table_name}' records"
                )
            # The writer claimed its commit first; report what it wrote
            result = await applying
        except asyncio.CancelledError:
            gate.abandon()
            raise

        run.records_written = result.written
        run.records_changed = result.changed
        run.errors_count = result.errors
        status = status_for(len(records), result)
        if since is None and status != runs.FAILURE:
            state.last_full_fetch_at = run.started_at
        return status, result.error_details

    async def _fetch(self, mapping: TableMapping, since: Optional[datetime]) -> List[SourceRecord]:
        return [
            record
            async for record in self.ctx.source.fetch_all(
                mapping.airtable_table,
                since=since,
                last_modified_field=mapping.last_modified_field,
            )
        ]

    def _since_for(self, state: TableSyncState, mapping: TableMapping) -> Optional[datetime]:
        if not self.ctx.settings.incremental_sync or not mapping.last_modified_field:
            return None
        return state.last_success_at

    def _finish(self, state: TableSyncState, run: SyncRun, status: str, details: Optional[str], started: float) -> None:
        run.finish(
            status,
            finished_at=self.ctx.clock(),
            duration_ms=int((self.ctx.monotonic() - started) * 1000),
            error_details=details,
        )
        state.last_run = run
        if status == runs.FAILURE:
            state.consecutive_failures += 1
        else:
            state.consecutive_failures = 0
        if status == runs.SUCCESS:
            state.last_success_at = run.started_at
        logger.info(
            "Sync %s %s: fetched=%d synced=%d changed=%d errors=%d in %dms",
            run.table_name, run.status, run.records_fetched, run.records_written,
            run.records_changed, run.errors_count, run.duration_ms,
        )

    async def _record(self, run: SyncRun) -> None:
        """Append to the ledger, waiting at most cycle_timeout_seconds.

        A slow append keeps going in the background; the table is released
        either way.
        """
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(self._store_executor, self.ctx.ledger.record, run)
        try:
            await asyncio.wait_for(asyncio.shield(pending), timeout=self.ctx.settings.cycle_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Ledger append for %s still pending; releasing the table", run.table_name)
            pending.add_done_callback(_log_late_failure)
        except Exception:
            logger.exception("Could not record %s run in the ledger", run.table_name)

    def _record_detached(self, run: SyncRun) -> None:
        """Ledger append that does not await (used while being cancelled)."""
        future = self._store_executor.submit(self.ctx.ledger.record, run)
        future.add_done_callback(_log_late_failure)


def _log_late_failure(future) -> None:
    """Done-callback for store work nobody awaits any more."""
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Background store call failed: %s", exc, exc_info=exc)


def _store_workers(engine, table_count: int) -> int:
    """SQLite allows one writer, so it gets a single store thread. Other
    databases get one per table so a slow table never queues the rest."""
    if engine.dialect.name == "sqlite":
        return 1
    return max(1, table_count)


def _job_id(table: str) -> str:
    return f"sync:{table}"


def build_scheduler(sync: SyncScheduler) -> AsyncIOScheduler:
    """
    Create the APScheduler with one interval job per table.

    Args:
        sync: SyncScheduler whose tables get a job each.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    scheduler = AsyncIOScheduler()
    interval = sync.ctx.settings.sync_interval_seconds
    for table in sync.states:
        scheduler.add_job(
            sync._scheduled_cycle,
            trigger="interval",
            seconds=interval,
            id=_job_id(table),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            kwargs={"table": table},
        )
    return scheduler
