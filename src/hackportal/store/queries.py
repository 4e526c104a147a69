"""
Read side of the mirror: what the API handlers serve.

Everything here reads SyncedRecord rows through the TTL cache and never
talks to Airtable. Cache keys live under the table's namespace
("events:all", "attendees:all") or "dashboard:", which the writer drops
after every successful apply.
"""
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from hackportal.cache import TTLCache
from hackportal.models.records import SyncedRecord


def list_rows(session: Session, cache: TTLCache, table: str) -> List[Dict[str, Any]]:
    """All mirrored rows of a table as flat dicts, ordered by Airtable id."""

    def load() -> List[Dict[str, Any]]:
        rows = session.exec(
            select(SyncedRecord)
            .where(SyncedRecord.table_name == table)
            .order_by(SyncedRecord.external_id)
        ).all()
        return [row.as_dict() for row in rows]

    return cache.get_or_load(f"{table}:all", load)


def list_events(session: Session, cache: TTLCache, triage_status: Optional[str] = None) -> List[Dict[str, Any]]:
    events = list_rows(session, cache, "events")
    if triage_status:
        events = [e for e in events if e.get("triage_status") == triage_status]
    return sorted(events, key=lambda e: (e.get("event_name") or "").lower())


def attendees_for_event(session: Session, cache: TTLCache, event_id: str) -> List[Dict[str, Any]]:
    """Attendees linked to an event, minus the ones soft-deleted in the cockpit."""
    return [
        a for a in list_rows(session, cache, "attendees")
        if a.get("event_airtable_id") == event_id and not a.get("deleted_in_cockpit")
    ]


def get_event(session: Session, cache: TTLCache, event_id: str) -> Optional[Dict[str, Any]]:
    """One event with its attendees, or None."""
    event = next((e for e in list_rows(session, cache, "events") if e["id"] == event_id), None)
    if event is None:
        return None
    detail = dict(event)
    detail["attendees"] = attendees_for_event(session, cache, event_id)
    detail["attendee_count"] = len(detail["attendees"])
    return detail


def capacity_status(percentage: float) -> str:
    if percentage >= 100:
        return "full"
    if percentage >= 80:
        return "high"
    if percentage >= 50:
        return "medium"
    return "low"


def event_card(event: Dict[str, Any], attendee_count: int) -> Dict[str, Any]:
    estimated = event.get("estimated_attendee_count") or 0
    percentage = round(attendee_count / estimated * 100, 1) if estimated else 0.0
    return {
        "id": event["id"],
        "name": event.get("event_name"),
        "location": event.get("location"),
        "city": event.get("city"),
        "country": event.get("country"),
        "event_format": event.get("event_format"),
        "triage_status": event.get("triage_status"),
        "start_date": event.get("start_date"),
        "end_date": event.get("end_date"),
        "attendee_count": attendee_count,
        "max_attendees": event.get("estimated_attendee_count"),
        "capacity_percentage": percentage,
        "capacity_status": capacity_status(percentage),
        "has_confirmed_venue": bool(event.get("has_confirmed_venue")),
        "is_upcoming": event.get("triage_status") == "approved",
    }


def dashboard_summary(session: Session, cache: TTLCache, triage_status: Optional[str] = None) -> Dict[str, Any]:
    """Stats plus one card per event, optionally filtered by triage status."""

    def load() -> Dict[str, Any]:
        events = list_events(session, cache, triage_status=triage_status)
        counts = Counter(
            a.get("event_airtable_id")
            for a in list_rows(session, cache, "attendees")
            if not a.get("deleted_in_cockpit")
        )
        cards = [event_card(e, counts.get(e["id"], 0)) for e in events]
        total_attendees = sum(c["attendee_count"] for c in cards)
        total_capacity = sum(c["max_attendees"] or 0 for c in cards)
        return {
            "stats": {
                "total_events": len(cards),
                "total_attendees": total_attendees,
                "upcoming_events": sum(1 for c in cards if c["is_upcoming"]),
                "unique_countries": len({c["country"] for c in cards if c["country"]}),
                "total_capacity": total_capacity,
                "avg_capacity_utilization": (
                    round(total_attendees / total_capacity * 100) if total_capacity else 0
                ),
                "confirmed_venues": sum(1 for c in cards if c["has_confirmed_venue"]),
                "by_triage_status": dict(Counter(c["triage_status"] for c in cards)),
            },
            "events": cards,
        }

    return cache.get_or_load(f"dashboard:summary:{triage_status or 'all'}", load)
