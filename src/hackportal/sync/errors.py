"""
Error taxonomy for the Airtable → local store reconciliation.

Cycle-level errors (SourceUnavailable, CycleTimeout) end a cycle and are
turned into a failed run by the scheduler. Row-level errors
(RecordValidationError, WriteConflict) never leave the writer; they are
counted into the run. ConcurrentRunRejected is a signal, not a failure.
"""


class SyncError(RuntimeError):
    """Base class for every sync error."""


class SourceUnavailable(SyncError):
    """Airtable could not be read: network, auth, or retries exhausted."""


class RecordValidationError(SyncError):
    """One Airtable record failed table-mapping validation."""

    def __init__(self, message: str, external_id: str = ""):
        super().__init__(message)
        self.external_id = external_id


class WriteConflict(SyncError):
    """The store rejected the write of one specific row."""

    def __init__(self, message: str, external_id: str = ""):
        super().__init__(message)
        self.external_id = external_id


class ConcurrentRunRejected(SyncError):
    """A cycle for this table is already running; the trigger was dropped."""

    def __init__(self, table: str):
        super().__init__(f"sync already running for table '{table}'")
        self.table = table


class SchedulerStopped(ConcurrentRunRejected):
    """Shutdown has begun; no new cycles are started."""

    def __init__(self, table: str):
        SyncError.__init__(self, f"scheduler is shutting down, '{table}' not started")
        self.table = table


class CycleTimeout(SyncError):
    """A cycle exceeded its maximum duration."""
