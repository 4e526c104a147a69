"""Dashboard route."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from hackportal.api.deps import get_cache, get_session
from hackportal.cache import TTLCache
from hackportal.store import queries

router = APIRouter()


@router.get("")
def dashboard(
    triage_status: Optional[str] = None,
    session: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    """Event stats plus one card per event (attendee count, capacity)."""
    return queries.dashboard_summary(session, cache, triage_status=triage_status)
