"""
Airtable table → local row normalizers.

Converts raw Airtable `fields` dicts into clean dicts that are stored as the
LocalRow field mapping. No DB access here; the writer handles persistence.

Every normalizer either returns a plain dict or raises
RecordValidationError; the writer counts those per record and moves on.
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from hackportal.sync.errors import RecordValidationError

Normalizer = Callable[[Dict[str, Any]], Dict[str, Any]]

EVENT_FORMATS = ("12-hours", "24-hours", "2-day")
USER_STATUSES = ("active", "admin", "inactive")
TRIAGE_STATUSES = ("pending", "approved", "rejected", "hold", "ask", "merge_confirmed")


@dataclass(frozen=True)
class TableMapping:
    """How one Airtable table is mirrored.

    last_modified_field names an Airtable "Last modified time" field when the
    table has one; it enables incremental fetches and becomes the row's
    source_version.
    """

    name: str
    airtable_table: str
    normalizer: Normalizer
    last_modified_field: Optional[str] = None

    def normalize(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self.normalizer(fields)


# ─── Field helpers ────────────────────────────────────────────────────────────

def sanitize_string(value: Any) -> Optional[str]:
    """Trim to a string; None and blank strings become None."""
    if value is None:
        return None
    if isinstance(value, list):
        value = ", ".join(str(v) for v in value)
    s = str(value).strip()
    return s or None


def require_string(fields: Dict[str, Any], key: str) -> str:
    value = sanitize_string(fields.get(key))
    if value is None:
        raise RecordValidationError(f"missing required field '{key}'")
    return value


def normalize_triage_status(value: Any) -> str:
    """Map Airtable triage values onto the local enum; unknown → pending."""
    s = sanitize_string(value)
    if not s:
        return "pending"
    s = s.lower()
    if s in ("denied", "rejected"):
        return "rejected"
    if s in ("merge confirmed", "merge_confirmed"):
        return "merge_confirmed"
    if s in TRIAGE_STATUSES:
        return s
    return "pending"


def parse_date(value: Any, key: str) -> Optional[str]:
    """Accept an ISO date or datetime string; return YYYY-MM-DD."""
    s = sanitize_string(value)
    if s is None:
        return None
    try:
        if "T" in s:
            return datetime.fromisoformat(s.replace("Z", "+00:00")).date().isoformat()
        return date.fromisoformat(s).isoformat()
    except ValueError:
        raise RecordValidationError(f"field '{key}' is not an ISO date: {s!r}")


def parse_int(value: Any, key: str, minimum: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"field '{key}' must be an integer")
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise RecordValidationError(f"field '{key}' must be an integer: {value!r}")
    if minimum is not None and number < minimum:
        raise RecordValidationError(f"field '{key}' must be >= {minimum}: {number}")
    return number


def parse_float(value: Any, key: str, low: float, high: float) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"field '{key}' must be a number: {value!r}")
    if not low <= number <= high:
        raise RecordValidationError(f"field '{key}' out of range [{low}, {high}]: {number}")
    return number


def parse_bool(value: Any) -> bool:
    # Airtable omits unchecked checkboxes entirely
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1", "checked")
    return bool(value)


def first_link(value: Any) -> Optional[str]:
    """Linked-record fields arrive as a list of record ids; keep the first."""
    if isinstance(value, list):
        return sanitize_string(value[0]) if value else None
    return sanitize_string(value)


# ─── Table normalizers ────────────────────────────────────────────────────────

_EVENT_TEXT_FIELDS = (
    "poc_first_name", "poc_last_name", "poc_preferred_name", "poc_slack_id",
    "location", "slug", "street_address", "street_address_2", "city", "state",
    "country", "zipcode", "sub_organizers", "project_url", "project_description",
    "notes",
)

# Airtable button/automation fields use "action - " prefixed names
_EVENT_ACTION_FIELDS = {
    "action - trigger_approval_email": "action_trigger_approval_email",
    "action - trigger_rejection_email": "action_trigger_rejection_email",
    "action - trigger_hold_email": "action_trigger_hold_email",
    "action - trigger_ask_email": "action_trigger_ask_email",
}


def normalize_event(fields: Dict[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "event_name": require_string(fields, "event_name"),
        "email": require_string(fields, "email"),
    }
    for key in _EVENT_TEXT_FIELDS:
        row[key] = sanitize_string(fields.get(key))
    for airtable_key, column in _EVENT_ACTION_FIELDS.items():
        row[column] = sanitize_string(fields.get(airtable_key))

    event_format = sanitize_string(fields.get("event_format"))
    if event_format is not None and event_format not in EVENT_FORMATS:
        raise RecordValidationError(f"unknown event_format {event_format!r}")
    row["event_format"] = event_format

    row["triage_status"] = normalize_triage_status(fields.get("triage_status"))
    row["estimated_attendee_count"] = parse_int(
        fields.get("estimated_attendee_count"), "estimated_attendee_count", minimum=0
    )
    row["lat"] = parse_float(fields.get("lat"), "lat", -90.0, 90.0)
    row["long"] = parse_float(fields.get("long"), "long", -180.0, 180.0)
    row["poc_dob"] = parse_date(fields.get("poc_dob"), "poc_dob")
    row["start_date"] = parse_date(fields.get("start_date"), "start_date")
    row["end_date"] = parse_date(fields.get("end_date"), "end_date")
    row["registration_deadline"] = parse_date(
        fields.get("registration_deadline"), "registration_deadline"
    )
    row["has_confirmed_venue"] = parse_bool(fields.get("has_confirmed_venue"))
    return row


def normalize_admin(fields: Dict[str, Any]) -> Dict[str, Any]:
    status = (sanitize_string(fields.get("user_status")) or "inactive").lower()
    if status not in USER_STATUSES:
        raise RecordValidationError(f"unknown user_status {status!r}")
    return {
        "email": require_string(fields, "email").lower(),
        "first_name": sanitize_string(fields.get("first_name")),
        "last_name": sanitize_string(fields.get("last_name")),
        "user_status": status,
    }


def normalize_attendee(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "email": require_string(fields, "email"),
        "preferred_name": sanitize_string(fields.get("preferred_name")),
        "first_name": sanitize_string(fields.get("first_name")),
        "last_name": sanitize_string(fields.get("last_name")),
        "dob": parse_date(fields.get("dob"), "dob"),
        "phone": sanitize_string(fields.get("phone")),
        "event_airtable_id": first_link(fields.get("event")),
        "deleted_in_cockpit": parse_bool(fields.get("deleted_in_cockpit")),
        "event_volunteer": parse_bool(fields.get("event_volunteer")),
        "checkin_completed": parse_bool(fields.get("checkin_completed")),
        "shirt_size": sanitize_string(fields.get("shirt_size")),
        "dietary_restrictions": sanitize_string(fields.get("dietary_restrictions")),
        "additional_accommodations": sanitize_string(fields.get("additional_accommodations")),
        "emergency_contact_1_name": sanitize_string(fields.get("emergency_contact_1_name")),
        "emergency_contact_1_phone": sanitize_string(fields.get("emergency_contact_1_phone")),
    }


_VENUE_TEXT_FIELDS = (
    "venue_id", "event_name", "venue_name", "address_1", "address_2", "city",
    "state", "country", "zip_code", "venue_contact_name", "venue_contact_email",
)


def normalize_venue(fields: Dict[str, Any]) -> Dict[str, Any]:
    row = {key: sanitize_string(fields.get(key)) for key in _VENUE_TEXT_FIELDS}
    if row["venue_name"] is None and row["event_name"] is None:
        raise RecordValidationError("venue has neither venue_name nor event_name")
    return row


TABLE_MAPPINGS: Dict[str, TableMapping] = {
    "events": TableMapping("events", "events", normalize_event, last_modified_field="last_modified"),
    "admins": TableMapping("admins", "admins", normalize_admin),
    "attendees": TableMapping("attendees", "attendees", normalize_attendee, last_modified_field="last_modified"),
    "venues": TableMapping("venues", "venues", normalize_venue),
}


def get_mapping(table: str) -> TableMapping:
    """Return the mapping for a configured table. Raises KeyError if unknown."""
    try:
        return TABLE_MAPPINGS[table]
    except KeyError:
        raise KeyError(f"no table mapping for '{table}'") from None


def known_tables() -> List[str]:
    return sorted(TABLE_MAPPINGS)
