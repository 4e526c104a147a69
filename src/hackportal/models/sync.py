"""Sync ledger model."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Column
from sqlmodel import Field, SQLModel

from hackportal.models.types import UTCDateTime


class SyncLog(SQLModel, table=True):
    """One row per finished reconciliation cycle. Rows are never updated."""

    __tablename__ = "sync_metadata"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    trigger: str = "scheduled"  # "scheduled", "manual"
    status: str  # "success", "partial_failure", "failure"
    started_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False, index=True))
    finished_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False))
    records_fetched: int = 0
    records_synced: int = 0
    records_changed: int = 0
    errors_count: int = 0
    error_details: Optional[str] = None
    duration_ms: int = 0
