"""Event detail route."""
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from hackportal.api.deps import get_cache, get_session
from hackportal.cache import TTLCache
from hackportal.store import queries

router = APIRouter()


@router.get("/{event_id}")
def get_event(
    event_id: str,
    session: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
):
    """Return one event with its attendees."""
    event = queries.get_event(session, cache, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event
