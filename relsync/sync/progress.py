"""
Progress events for fetches, exposed as a subscribable and pollable stream.
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from relsync.utils.helpers import Clock, SystemClock

logger = logging.getLogger("relsync.progress")

ProgressCallback = Callable[["ProgressEvent"], None]


class ProgressStage(Enum):
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    SAVING = "saving"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ProgressEvent:
    """One step of a fetch as seen by the UI."""
    key: str
    stage: ProgressStage
    message: str
    bytes_downloaded: Optional[int] = None
    bytes_total: Optional[int] = None
    is_incremental: bool = False
    emitted_at: int = 0
    error: Optional[str] = None

    @property
    def percent_complete(self) -> Optional[int]:
        if not self.bytes_total or self.bytes_downloaded is None:
            return None
        return min(100, round(self.bytes_downloaded * 100 / self.bytes_total))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "stage": self.stage.value,
            "message": self.message,
            "bytesDownloaded": self.bytes_downloaded,
            "bytesTotal": self.bytes_total,
            "percentComplete": self.percent_complete,
            "isIncremental": self.is_incremental,
            "emittedAt": self.emitted_at,
            "error": self.error,
        }


class ProgressReporter:
    """
    Fan-out of progress events to subscribers plus a bounded history for polling.

    Subscribers never affect the fetch: an exception raised by a callback is
    logged and dropped.
    """

    def __init__(self, history_size: int = 200, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._subscribers: List[ProgressCallback] = []
        self._history: Deque[ProgressEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(
        self,
        key: str,
        stage: ProgressStage,
        message: str,
        callback: Optional[ProgressCallback] = None,
        **fields: Any,
    ) -> ProgressEvent:
        """Record an event and deliver it to `callback` and all subscribers."""
        event = ProgressEvent(
            key=key,
            stage=stage,
            message=message,
            emitted_at=self._clock.now_ms(),
            **fields,
        )
        with self._lock:
            self._history.append(event)
            targets = list(self._subscribers)
        if callback is not None:
            targets.append(callback)

        for target in targets:
            try:
                target(event)
            except Exception as e:
                logger.warning(f"Progress subscriber failed for {key}: {e}")
        return event

    def events(self, key: Optional[str] = None) -> List[ProgressEvent]:
        """Recorded events, oldest first, optionally for one key."""
        with self._lock:
            history = list(self._history)
        if key is None:
            return history
        return [e for e in history if e.key == key]

    def latest(self, key: str) -> Optional[ProgressEvent]:
        events = self.events(key)
        return events[-1] if events else None

    def clear(self):
        with self._lock:
            self._history.clear()
