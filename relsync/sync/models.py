"""
Data models for sync jobs, bulk runs and fetch results.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class JobStatus(Enum):
    """Lifecycle of a background sync job."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SyncState(Enum):
    """Named states of the incremental sync state machine."""
    CHECKING = "checking"
    FRESH_HIT = "fresh_hit"
    LOOKUP_REVISION = "lookup_revision"
    REVISION_MATCH = "revision_match"
    INCREMENTAL = "incremental"
    FULL = "full"
    SAVING = "saving"
    DONE = "done"
    ERROR = "error"


class BulkPhase(Enum):
    IDLE = "idle"
    FETCHING_TARGETS = "fetching-targets"
    SYNCING = "syncing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class SyncJob:
    """A queued background fetch for one key."""
    target_key: str
    priority: int
    queued_at: int
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    available_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetKey": self.target_key,
            "priority": self.priority,
            "queuedAt": self.queued_at,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "availableAt": self.available_at,
        }


@dataclass
class BulkSyncStatus:
    """Aggregate state of one bulk synchronization run."""
    is_running: bool = False
    total_targets: int = 0
    synced_targets: int = 0
    current_target: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_full_sync: Optional[int] = None
    phase: BulkPhase = BulkPhase.IDLE
    fetched_pages: int = 0
    run_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BulkSyncStatus":
        data = dict(data)
        data["phase"] = BulkPhase(data.get("phase", BulkPhase.IDLE.value))
        data["errors"] = list(data.get("errors") or [])
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def copy(self) -> "BulkSyncStatus":
        return BulkSyncStatus.from_dict(self.to_dict())


@dataclass
class FetchOptions:
    """Per-call options for IncrementalSyncEngine.fetch_smart."""
    force_refresh: bool = False
    prefer_stale: bool = False
    on_progress: Optional[Callable[[Any], None]] = None
    run_id: Optional[str] = None


@dataclass
class FetchResult:
    """Outcome of fetch_smart. Shared as-is between coalesced callers."""
    key: str
    payload: Any
    was_cached: bool
    was_incremental: bool
    revision: Optional[str]
    download_size: int = 0
    trace: Tuple[SyncState, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload,
            "wasCached": self.was_cached,
            "wasIncremental": self.was_incremental,
            "revision": self.revision,
            "downloadSize": self.download_size,
            "trace": [s.value for s in self.trace],
        }
