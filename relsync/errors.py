"""
Error taxonomy for the synchronization engine.

Callers distinguish outcomes by exception type:
- StorageUnavailable: cache I/O failed; reads degrade to "no cache"
- NetworkFailure / FetchTimeout: transient, retried by the background queue
- UnsupportedOperation: remote cannot serve deltas, full fetch follows
- IncompleteBaseData: delta payload lacks base records, full fetch follows
- ParseFailure: terminal, no further fallback
- SyncAlreadyRunning: a bulk run is active; a rejection, not a failure
- RunEnumerationFailure: target listing failed, the bulk run is aborted
"""


class RelsyncError(Exception):
    """Base class for all engine errors."""


class StorageUnavailable(RelsyncError):
    """Persistent store could not be read or written."""


class NetworkFailure(RelsyncError):
    """Remote call failed (connection error, bad status, oversized payload)."""


class FetchTimeout(NetworkFailure):
    """Remote call exceeded its time budget and was aborted."""


class UnsupportedOperation(RelsyncError):
    """Remote does not support the requested operation (e.g. delta fetch)."""


class ParseFailure(RelsyncError):
    """Payload could not be turned into domain records."""


class IncompleteBaseData(ParseFailure):
    """Delta payload references records that are not present in it."""


class SyncAlreadyRunning(RelsyncError):
    """A bulk synchronization run is already in progress."""

    def __init__(self, status=None):
        super().__init__("A bulk sync is already running")
        self.status = status


class RunEnumerationFailure(RelsyncError):
    """Listing the targets of a bulk run failed."""
