"""FastAPI dependencies: everything hangs off app.state, set up in the lifespan."""
from typing import Generator, Optional

from fastapi import Request
from sqlmodel import Session

from hackportal.cache import TTLCache
from hackportal.sync.ledger import SyncLedger
from hackportal.sync.scheduler import SyncScheduler
from hackportal.sync.writer import LocalStoreWriter


def get_session(request: Request) -> Generator[Session, None, None]:
    """Yields a DB session bound to the app's engine."""
    with Session(request.app.state.engine) as session:
        yield session


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_ledger(request: Request) -> SyncLedger:
    return request.app.state.ledger


def get_writer(request: Request) -> LocalStoreWriter:
    return request.app.state.writer


def get_sync(request: Request) -> Optional[SyncScheduler]:
    """The running scheduler, or None when sync is disabled in this process."""
    return request.app.state.sync
