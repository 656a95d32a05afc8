"""
Pydantic schemas for API request/response models
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from relsync.sync.models import BulkPhase, JobStatus, SyncState
from relsync.sync.progress import ProgressStage


# ===== FETCH SCHEMAS =====

class FetchRequest(BaseModel):
    """Options for an on-demand fetch"""
    force_refresh: bool = False
    prefer_stale: bool = False
    wait_timeout: Optional[float] = None


class FetchResponse(BaseModel):
    key: str
    payload: Any = None
    was_cached: bool
    was_incremental: bool
    revision: Optional[str] = None
    download_size: int = 0
    trace: List[SyncState] = []

    class Config:
        from_attributes = True


# ===== CACHE SCHEMAS =====

class CacheStatusResponse(BaseModel):
    key: str
    has_cached: bool
    is_stale: bool
    cached_revision: Optional[str] = None
    remote_revision: Optional[str] = None
    cached_at: Optional[int] = None
    cached_size: Optional[int] = None
    record_counts: Dict[str, int] = {}

    class Config:
        from_attributes = True


class ClearCacheResponse(BaseModel):
    cleared: int


class InvalidateResponse(BaseModel):
    key: str
    removed: bool


# ===== QUEUE SCHEMAS =====

class EnqueueRequest(BaseModel):
    keys: List[str]
    priority: int = 10


class EnqueueResponse(BaseModel):
    queued: int
    has_pending_work: bool


class DrainRequest(BaseModel):
    max_items: Optional[int] = None


class DrainResponse(BaseModel):
    processed: int
    has_pending_work: bool


class SyncJobResponse(BaseModel):
    target_key: str
    priority: int
    queued_at: int
    status: JobStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    available_at: int = 0

    class Config:
        from_attributes = True


class QueueResponse(BaseModel):
    stats: Dict[str, int]
    jobs: List[SyncJobResponse]


# ===== BULK SYNC SCHEMAS =====

class BulkSyncStatusResponse(BaseModel):
    is_running: bool
    total_targets: int = 0
    synced_targets: int = 0
    current_target: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_full_sync: Optional[int] = None
    phase: BulkPhase = BulkPhase.IDLE
    fetched_pages: int = 0
    run_id: Optional[str] = None
    errors: List[str] = []

    class Config:
        from_attributes = True


# ===== PROGRESS SCHEMAS =====

class ProgressEventResponse(BaseModel):
    key: str
    stage: ProgressStage
    message: str
    bytes_downloaded: Optional[int] = None
    bytes_total: Optional[int] = None
    percent_complete: Optional[int] = None
    is_incremental: bool = False
    emitted_at: int = 0
    error: Optional[str] = None

    class Config:
        from_attributes = True


# ===== LOOKUP SCHEMAS =====

class BlockersResponse(BaseModel):
    profile_did: str
    blockers: List[str]
    count: int
