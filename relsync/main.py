"""
relsync - FastAPI application
Exposes on-demand fetches, the background queue and bulk runs over HTTP.
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from relsync import lookup
from relsync.context import SyncContext, build_context
from relsync.errors import (
    FetchTimeout,
    NetworkFailure,
    ParseFailure,
    RelsyncError,
    RunEnumerationFailure,
    StorageUnavailable,
    SyncAlreadyRunning,
    UnsupportedOperation,
)
from relsync.schemas import (
    BlockersResponse,
    BulkSyncStatusResponse,
    CacheStatusResponse,
    ClearCacheResponse,
    DrainRequest,
    DrainResponse,
    EnqueueRequest,
    EnqueueResponse,
    FetchRequest,
    FetchResponse,
    InvalidateResponse,
    ProgressEventResponse,
    QueueResponse,
    SyncJobResponse,
)

load_dotenv()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("relsync.api")

APP_NAME = "relsync"
APP_VERSION = "0.1.0"

# Most specific first
ERROR_STATUS = [
    (SyncAlreadyRunning, 409),
    (FetchTimeout, 504),
    (NetworkFailure, 502),
    (ParseFailure, 422),
    (UnsupportedOperation, 501),
    (StorageUnavailable, 503),
    (RunEnumerationFailure, 502),
]


def status_for_error(error: Exception) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(context: Optional[SyncContext] = None) -> FastAPI:
    """
    Build the API around `context`.

    Without a context, one is built from settings on first use.
    """
    context_lock = threading.Lock()

    def get_context(request: Request) -> SyncContext:
        state = request.app.state
        if state.context is None:
            with context_lock:
                if state.context is None:
                    state.context = build_context(settings)
        return state.context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            app.state.context = build_context(settings)
        app.state.context.start_worker()
        yield
        app.state.context.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="Incremental sync and cache for moderation relationships",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.context = context

    @app.exception_handler(RelsyncError)
    async def relsync_error_handler(request: Request, exc: RelsyncError):
        status_code = status_for_error(exc)
        body = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, SyncAlreadyRunning) and exc.status is not None:
            body["status"] = BulkSyncStatusResponse.model_validate(
                exc.status
            ).model_dump(mode="json")
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content=body)

    @app.exception_handler(TimeoutError)
    async def wait_timeout_handler(request: Request, exc: TimeoutError):
        return JSONResponse(
            status_code=504, content={"detail": str(exc), "error": "TimeoutError"}
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "name": APP_NAME, "version": APP_VERSION}

    # ===== ON-DEMAND =====

    @app.post("/fetch/{key}", response_model=FetchResponse)
    def fetch(
        key: str,
        body: Optional[FetchRequest] = None,
        ctx: SyncContext = Depends(get_context),
    ):
        """Fetch one key, using the cache where it is still valid."""
        body = body or FetchRequest()
        result = ctx.fetch_smart(
            key,
            force_refresh=body.force_refresh,
            prefer_stale=body.prefer_stale,
            wait_timeout=body.wait_timeout,
        )
        return FetchResponse.model_validate(result)

    @app.get("/cache/stats")
    def cache_stats(ctx: SyncContext = Depends(get_context)):
        """Get cache statistics."""
        return ctx.cache_stats()

    @app.get("/cache/{key}/status", response_model=CacheStatusResponse)
    def cache_status(key: str, ctx: SyncContext = Depends(get_context)):
        return CacheStatusResponse.model_validate(ctx.get_cache_status(key))

    @app.delete("/cache", response_model=ClearCacheResponse)
    def clear_cache(ctx: SyncContext = Depends(get_context)):
        return ClearCacheResponse(cleared=ctx.clear_cache())

    @app.delete("/cache/{key}", response_model=InvalidateResponse)
    def invalidate(key: str, ctx: SyncContext = Depends(get_context)):
        return InvalidateResponse(key=key, removed=ctx.invalidate(key))

    # ===== BACKGROUND QUEUE =====

    @app.post("/queue", response_model=EnqueueResponse)
    def enqueue(body: EnqueueRequest, ctx: SyncContext = Depends(get_context)):
        queued = ctx.enqueue_background(body.keys, body.priority)
        return EnqueueResponse(queued=queued, has_pending_work=ctx.has_pending_work())

    @app.post("/queue/drain", response_model=DrainResponse)
    def drain(body: Optional[DrainRequest] = None, ctx: SyncContext = Depends(get_context)):
        body = body or DrainRequest()
        processed = ctx.drain_queue(body.max_items)
        return DrainResponse(processed=processed, has_pending_work=ctx.has_pending_work())

    @app.get("/queue", response_model=QueueResponse)
    def queue_status(ctx: SyncContext = Depends(get_context)):
        jobs = [SyncJobResponse.model_validate(job) for job in ctx.queue.all_jobs()]
        return QueueResponse(stats=ctx.queue.get_stats(), jobs=jobs)

    @app.delete("/queue/finished")
    def clear_finished(ctx: SyncContext = Depends(get_context)):
        return {"removed": ctx.queue.clear_finished()}

    # ===== BULK SYNC =====

    @app.post("/bulk-sync", status_code=202, response_model=BulkSyncStatusResponse)
    def start_bulk_sync(ctx: SyncContext = Depends(get_context)):
        """Start a bulk run in the background. 409 if one is already running."""
        status = ctx.start_bulk_sync(background=True)
        return BulkSyncStatusResponse.model_validate(status)

    @app.get("/bulk-sync/status", response_model=BulkSyncStatusResponse)
    def bulk_sync_status(ctx: SyncContext = Depends(get_context)):
        return BulkSyncStatusResponse.model_validate(ctx.get_bulk_sync_status())

    # ===== PROGRESS & LOOKUPS =====

    @app.get("/progress", response_model=List[ProgressEventResponse])
    def progress(
        key: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        ctx: SyncContext = Depends(get_context),
    ):
        events = ctx.reporter.events(key)[-limit:]
        return [ProgressEventResponse.model_validate(event) for event in events]

    @app.get("/blockers/{profile_did}", response_model=BlockersResponse)
    def blockers(profile_did: str, ctx: SyncContext = Depends(get_context)):
        """Follows whose cached block lists include `profile_did`."""
        found = lookup.blockers_among_follows(ctx.cache, profile_did)
        return BlockersResponse(profile_did=profile_did, blockers=found, count=len(found))

    return app


app = create_app()
