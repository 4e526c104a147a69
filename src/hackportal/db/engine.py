"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from hackportal.config import get_settings

_engine = None


def build_engine(database_url: str):
    """Create an engine for the given URL and make sure the schema exists."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Writes happen on worker threads, reads on the FastAPI threadpool
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, connect_args=connect_args)

    # Import all models so metadata is populated before create_all
    from hackportal.models.records import SyncedRecord  # noqa
    from hackportal.models.sync import SyncLog  # noqa
    SQLModel.metadata.create_all(engine)
    from hackportal.db.migrations import run_migrations
    run_migrations(engine)
    return engine


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine
