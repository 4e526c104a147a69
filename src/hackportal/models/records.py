"""Local mirror of Airtable rows, one row per (table, Airtable record id)."""
import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from hackportal.models.types import UTCDateTime, utc_now


class SyncedRecord(SQLModel, table=True):
    """
    Cached counterpart of one Airtable record.

    Content columns (fields_json, content_hash, source_version, synced_at)
    only change when the upstream content changes. last_seen_at moves on
    every fetch that returned the record, so a row whose last_seen_at is
    older than the table's latest full fetch is soft-stale.
    """

    __tablename__ = "synced_records"
    __table_args__ = (
        UniqueConstraint("table_name", "external_id", name="uq_synced_records_table_external"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    external_id: str = Field(index=True)  # Airtable record id, e.g. "recXXXXXXXXXXXXXX"

    fields_json: str = "{}"
    content_hash: str = ""
    source_version: Optional[str] = None

    first_synced_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
    synced_at: datetime = Field(default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False))
    last_seen_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(UTCDateTime, nullable=False, index=True)
    )

    def field_values(self) -> Dict[str, Any]:
        """Decode fields_json into a dict."""
        return json.loads(self.fields_json or "{}")

    def as_dict(self) -> Dict[str, Any]:
        """Flattened API representation: Airtable id plus the mapped fields."""
        data = {"id": self.external_id}
        data.update(self.field_values())
        data["synced_at"] = self.synced_at.isoformat()
        return data
