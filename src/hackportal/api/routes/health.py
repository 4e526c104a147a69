"""Health, sync ledger and manual trigger routes."""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from hackportal.api.deps import get_cache, get_ledger, get_session, get_sync
from hackportal.cache import TTLCache
from hackportal.models.sync import SyncLog
from hackportal.models.types import utc_now
from hackportal.sync import runs
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.scheduler import SyncScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    table: Optional[str] = None  # If None, triggers every configured table


def _database_ok(session: Session) -> bool:
    try:
        session.connection().execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        return False


def _now(sync: Optional[SyncScheduler]) -> datetime:
    """The scheduler's clock when there is one, so ledger windows line up with run times."""
    return sync.ctx.clock() if sync is not None else utc_now()


def _jobs(sync: Optional[SyncScheduler], latest: Dict[str, SyncLog]) -> List[Dict[str, Any]]:
    if sync is not None:
        return sync.snapshot()
    return [
        {"table": name, "running": False, "last_status": log.status}
        for name, log in sorted(latest.items())
    ]


def _metrics_24h(ledger: SyncLedger, now: datetime) -> Dict[str, Any]:
    m = ledger.metrics(since=now - timedelta(hours=24))
    return {
        "total_runs": m.total_runs,
        "successful_runs": m.successful_runs,
        "error_runs": m.error_runs,
        "success_rate": round(m.success_rate, 1),
        "average_duration_ms": m.average_duration_ms,
    }


@router.get("")
def health(session: Session = Depends(get_session)):
    """Liveness plus a database round trip."""
    if not _database_ok(session):
        raise HTTPException(status_code=503, detail="database unavailable")
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "database": "connected",
    }


@router.get("/status")
def health_status(
    request: Request,
    session: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    ledger: SyncLedger = Depends(get_ledger),
    sync: Optional[SyncScheduler] = Depends(get_sync),
):
    """
    Aggregated health: database, per-table sync jobs, last ledger entries,
    24h metrics and cache stats.

    Overall status is "unhealthy" when the database is down, "degraded" when
    any table's last run failed, "healthy" otherwise.
    """
    database_ok = _database_ok(session)
    latest = ledger.latest_per_table() if database_ok else {}
    jobs = _jobs(sync, latest)

    if not database_ok:
        overall = "unhealthy"
    elif any(job["last_status"] == runs.FAILURE for job in jobs):
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "timestamp": utc_now().isoformat(),
        "uptime_seconds": round(time.monotonic() - request.app.state.started_at, 1),
        "database": "connected" if database_ok else "disconnected",
        "scheduler": "running" if sync is not None else "disabled",
        "jobs": jobs,
        "last_runs": {name: log.model_dump(mode="json") for name, log in latest.items()},
        "metrics_24h": _metrics_24h(ledger, _now(sync)) if database_ok else None,
        "cache": cache.stats(),
    }


@router.get("/sync-jobs")
def sync_jobs(
    ledger: SyncLedger = Depends(get_ledger),
    sync: Optional[SyncScheduler] = Depends(get_sync),
):
    """Per-table job summaries and 24h ledger metrics."""
    return {
        "scheduler": "running" if sync is not None else "disabled",
        "jobs": _jobs(sync, ledger.latest_per_table()),
        "metrics_24h": _metrics_24h(ledger, _now(sync)),
    }


@router.get("/database")
def database_health(session: Session = Depends(get_session)):
    """Database round trip only; always 200 with the outcome in the body."""
    ok = _database_ok(session)
    return {
        "status": "healthy" if ok else "unhealthy",
        "last_check": utc_now().isoformat(),
        "details": "Database connection healthy" if ok else "Database connection failed",
        "backend": session.get_bind().dialect.name,
    }


@router.get("/sync-logs", response_model=List[SyncLog])
def sync_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    table: Optional[str] = None,
    ledger: SyncLedger = Depends(get_ledger),
):
    """Recent ledger entries, newest first."""
    return ledger.recent(table=table, limit=limit, offset=offset)


@router.post("/sync/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    sync: Optional[SyncScheduler] = Depends(get_sync),
):
    """
    Start a manual cycle for one table (or all of them).
    Returns immediately; cycles run in the background. A table that is
    already syncing is reported under "rejected" rather than queued.
    """
    if sync is None:
        raise HTTPException(status_code=503, detail="sync scheduler is disabled")
    try:
        result = sync.trigger([request.table] if request.table else None)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown table: {request.table}")

    if result.accepted:
        message = f"Sync started for {', '.join(result.accepted)}"
    else:
        message = "No sync started"
    return {
        "accepted": result.accepted,
        "rejected": [
            {"table": table, "reason": reason} for table, reason in result.rejected.items()
        ],
        "message": message,
    }
