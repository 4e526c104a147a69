"""Admin routes: raw event listing, cache control and stale-row maintenance."""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from hackportal.airtable.mappings import known_tables
from hackportal.api.deps import get_cache, get_session, get_sync, get_writer
from hackportal.cache import TTLCache
from hackportal.models.types import utc_now
from hackportal.store import queries
from hackportal.sync.scheduler import SyncScheduler
from hackportal.sync.writer import LocalStoreWriter

router = APIRouter()


def _stale_cutoff(
    table: str,
    older_than_minutes: Optional[int],
    sync: Optional[SyncScheduler],
) -> datetime:
    """
    Rows last seen before the returned instant are stale.

    An explicit age wins; otherwise the table's latest full fetch is the
    cutoff, so "stale" means "absent from the last full fetch".
    """
    if table not in known_tables():
        raise HTTPException(status_code=404, detail=f"Unknown table: {table}")
    if older_than_minutes is not None:
        return utc_now() - timedelta(minutes=older_than_minutes)
    state = sync.states.get(table) if sync is not None else None
    if state is None or state.last_full_fetch_at is None:
        raise HTTPException(
            status_code=409,
            detail=f"No full fetch of '{table}' yet; pass older_than_minutes",
        )
    return state.last_full_fetch_at


@router.get("/events")
def admin_events(
    triage_status: Optional[str] = None,
    session: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    """All mirrored events, optionally filtered by triage status."""
    events = queries.list_events(session, cache, triage_status=triage_status)
    return {"events": events, "count": len(events)}


@router.post("/clear-cache")
def clear_cache(cache: TTLCache = Depends(get_cache)):
    cleared = cache.stats()["size"]
    cache.clear()
    return {"message": "Cache cleared", "entries_cleared": cleared}


@router.get("/tables/{table}/stale")
def stale_rows(
    table: str,
    older_than_minutes: Optional[int] = Query(None, ge=0),
    writer: LocalStoreWriter = Depends(get_writer),
    sync: Optional[SyncScheduler] = Depends(get_sync),
):
    """Rows of `table` that no fetch has confirmed since the cutoff."""
    cutoff = _stale_cutoff(table, older_than_minutes, sync)
    rows = writer.stale_rows(table, seen_before=cutoff)
    return {
        "table": table,
        "seen_before": cutoff.isoformat(),
        "count": len(rows),
        "rows": [
            {**row.as_dict(), "last_seen_at": row.last_seen_at.isoformat()} for row in rows
        ],
    }


@router.post("/tables/{table}/purge-stale")
def purge_stale(
    table: str,
    older_than_minutes: Optional[int] = Query(None, ge=0),
    writer: LocalStoreWriter = Depends(get_writer),
    sync: Optional[SyncScheduler] = Depends(get_sync),
):
    """Delete the stale rows of `table`. Never done by the scheduler itself."""
    cutoff = _stale_cutoff(table, older_than_minutes, sync)
    deleted = writer.purge_stale(table, seen_before=cutoff)
    return {"table": table, "seen_before": cutoff.isoformat(), "deleted": deleted}
