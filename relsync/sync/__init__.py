"""
Synchronization: data models, progress stream, remote and parser interfaces.

The engine, queue and bulk orchestrator depend on storage and are imported
from their own modules.
"""
from .models import (
    BulkPhase,
    BulkSyncStatus,
    FetchOptions,
    FetchResult,
    JobStatus,
    SyncJob,
    SyncState,
)
from .progress import ProgressEvent, ProgressReporter, ProgressStage
from .remote import AtprotoRemoteSource, FetchBudget, RemoteSource, TargetPage
from .parser import ClassifyingParser, JsonRecordParser, RecordParser

__all__ = [
    # Models
    "BulkPhase",
    "BulkSyncStatus",
    "FetchOptions",
    "FetchResult",
    "JobStatus",
    "SyncJob",
    "SyncState",
    # Progress
    "ProgressEvent",
    "ProgressReporter",
    "ProgressStage",
    # Collaborators
    "AtprotoRemoteSource",
    "FetchBudget",
    "RemoteSource",
    "TargetPage",
    "ClassifyingParser",
    "JsonRecordParser",
    "RecordParser",
]
