"""
Database migrations for the portal mirror.

Uses ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from build_engine() after create_all() so both
fresh installs and existing databases are handled without manual steps.
Column discovery goes through SQLAlchemy's inspector, so the same code
runs against SQLite (dev/tests) and PostgreSQL (production).
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # synced_records: soft-stale tracking and change markers
        _add_column_if_missing(conn, "synced_records", "last_seen_at", "TIMESTAMP WITH TIME ZONE")
        _add_column_if_missing(conn, "synced_records", "source_version", "VARCHAR")
        _add_column_if_missing(conn, "synced_records", "first_synced_at", "TIMESTAMP WITH TIME ZONE")

        # sync_metadata: per-run counters absent from the portal's earlier sync_metadata schema
        _add_column_if_missing(conn, "sync_metadata", "records_fetched", "INTEGER DEFAULT 0")
        _add_column_if_missing(conn, "sync_metadata", "records_changed", "INTEGER DEFAULT 0")
        _add_column_if_missing(conn, "sync_metadata", "duration_ms", "INTEGER DEFAULT 0")
        _add_column_if_missing(conn, "sync_metadata", "trigger", "VARCHAR DEFAULT 'scheduled'")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Tables that don't exist yet are skipped; create_all() builds them whole.

    Args:
        conn: SQLAlchemy connection.
        table: Table name.
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "TIMESTAMP", "VARCHAR".
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f'ALTER TABLE {table} ADD COLUMN "{column}" {col_type}'))
