"""
In-memory run and per-table state types.

Per-table state machine:

    idle → running → {success | partial_failure | failure} → idle

A SyncRun is created in "running" and finish() is its only transition.
Terminal runs are frozen; the ledger stores them as SyncLog rows.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from hackportal.models.sync import SyncLog

RUNNING = "running"
SUCCESS = "success"
PARTIAL_FAILURE = "partial_failure"
FAILURE = "failure"

TERMINAL_STATUSES = frozenset({SUCCESS, PARTIAL_FAILURE, FAILURE})

MAX_ERROR_DETAILS = 2000


class RunStateError(RuntimeError):
    """Raised on an illegal SyncRun transition."""


@dataclass
class SyncRun:
    """One attempt to reconcile one table, identified by (table_name, started_at)."""

    table_name: str
    started_at: datetime
    trigger: str = "scheduled"
    status: str = RUNNING
    records_fetched: int = 0
    records_written: int = 0
    records_changed: int = 0
    errors_count: int = 0
    error_details: Optional[str] = None
    finished_at: Optional[datetime] = None
    duration_ms: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(
        self,
        status: str,
        *,
        finished_at: datetime,
        duration_ms: int,
        error_details: Optional[str] = None,
    ) -> "SyncRun":
        """Move the run from running to a terminal status. Allowed exactly once."""
        if self.is_terminal:
            raise RunStateError(
                f"run for '{self.table_name}' already finished as {self.status}"
            )
        if status not in TERMINAL_STATUSES:
            raise RunStateError(f"'{status}' is not a terminal status")
        self.finished_at = finished_at
        self.duration_ms = max(0, int(duration_ms))
        if error_details:
            self.error_details = error_details[:MAX_ERROR_DETAILS]
        self.status = status  # last: freezes the run
        return self

    def __setattr__(self, name: str, value: Any) -> None:
        # Terminal runs are immutable once every field has been initialised
        if name in self.__dict__ and self.__dict__.get("status") in TERMINAL_STATUSES:
            raise RunStateError(f"run for '{self.table_name}' is terminal; cannot set {name}")
        object.__setattr__(self, name, value)

    def to_log(self) -> SyncLog:
        """Ledger row for a terminal run."""
        return SyncLog(
            table_name=self.table_name,
            trigger=self.trigger,
            status=self.status,
            started_at=self.started_at,
            finished_at=self.finished_at or self.started_at,
            records_fetched=self.records_fetched,
            records_synced=self.records_written,
            records_changed=self.records_changed,
            errors_count=self.errors_count,
            error_details=self.error_details,
            duration_ms=self.duration_ms,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "table": self.table_name,
            "status": self.status,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "records_fetched": self.records_fetched,
            "records_synced": self.records_written,
            "records_changed": self.records_changed,
            "errors_count": self.errors_count,
            "error_details": self.error_details,
            "duration_ms": self.duration_ms,
        }


@dataclass
class TableSyncState:
    """Per-table scheduler bookkeeping. Only SyncScheduler mutates it."""

    table_name: str
    running: bool = False
    current_run: Optional[SyncRun] = None
    last_run: Optional[SyncRun] = None
    last_success_at: Optional[datetime] = None
    last_full_fetch_at: Optional[datetime] = None
    consecutive_failures: int = 0
    runs_started: int = field(default=0)
