"""
SyncLedger: append-only history of finished cycles (sync_metadata table).

Only record() writes. There is no update or delete path: the health
endpoints, the dashboard log view and any log streaming are readers of
recent() and latest_per_table().
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlmodel import Session, func, select

from hackportal.models.sync import SyncLog
from hackportal.sync import runs
from hackportal.sync.runs import SyncRun

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerMetrics:
    total_runs: int
    successful_runs: int
    error_runs: int
    success_rate: float
    average_duration_ms: float


class SyncLedger:
    def __init__(self, engine):
        self.engine = engine

    def record(self, run: SyncRun) -> SyncLog:
        """Append a terminal run. Running runs are refused."""
        if not run.is_terminal:
            raise ValueError(f"cannot record a {run.status} run for '{run.table_name}'")
        log = run.to_log()
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def recent(self, table: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[SyncLog]:
        """Most recent entries first, optionally for one table."""
        query = select(SyncLog)
        if table:
            query = query.where(SyncLog.table_name == table)
        query = (
            query.order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .offset(max(0, offset))
            .limit(max(0, limit))
        )
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def latest_per_table(self) -> Dict[str, SyncLog]:
        """Newest entry for every table that has one."""
        with Session(self.engine) as s:
            newest = (
                select(SyncLog.table_name, func.max(SyncLog.id).label("max_id"))
                .group_by(SyncLog.table_name)
                .subquery()
            )
            rows = s.exec(
                select(SyncLog).join(newest, SyncLog.id == newest.c.max_id)
            ).all()
        return {row.table_name: row for row in rows}

    def metrics(self, since: datetime) -> LedgerMetrics:
        """Success rate and average duration of runs started after `since`."""
        with Session(self.engine) as s:
            logs = s.exec(select(SyncLog).where(SyncLog.started_at >= since)).all()

        total = len(logs)
        successful = sum(1 for log in logs if log.status == runs.SUCCESS)
        with_errors = sum(1 for log in logs if log.status != runs.SUCCESS)
        avg_duration = sum(log.duration_ms for log in logs) / total if total else 0.0
        return LedgerMetrics(
            total_runs=total,
            successful_runs=successful,
            error_runs=with_errors,
            success_rate=(successful / total) * 100 if total else 100.0,
            average_duration_ms=round(avg_duration, 1),
        )
