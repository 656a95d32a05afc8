"""
Remote source interface and the AT Protocol HTTP implementation.

The engine only sees the RemoteSource protocol, so tests and alternative
transports can swap the HTTP client out without touching sync logic.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from relsync.cache.ttl_policies import get_kind_for_key
from relsync.errors import FetchTimeout, NetworkFailure, UnsupportedOperation

logger = logging.getLogger("relsync.remote")

ChunkCallback = Callable[[int, Optional[int]], None]

CHUNK_SIZE = 64 * 1024
FOLLOWS_PAGE_LIMIT = 100
RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BACKOFF_SECONDS = 1.0


class FetchBudget:
    """
    Hard limits for one remote call: a deadline, a byte ceiling and a cancel signal.

    The transport calls check() between chunks and aborts the transfer as
    soon as any limit is hit.
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        max_bytes: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self.max_bytes = max_bytes
        self.cancel_event = cancel_event or threading.Event()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check(self, bytes_so_far: int = 0):
        """Raise if the call must stop now."""
        if self.cancel_event.is_set():
            raise FetchTimeout("Remote call cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise FetchTimeout(f"Remote call exceeded {self.timeout_seconds}s")
        if self.max_bytes is not None and bytes_so_far > self.max_bytes:
            raise NetworkFailure(
                f"Payload exceeded {self.max_bytes} bytes, transfer aborted"
            )


@dataclass
class TargetPage:
    """One page of bulk-run targets."""
    items: List[str] = field(default_factory=list)
    cursor: Optional[str] = None


class RemoteSource(Protocol):
    """
    Versioned, paginated remote the engine synchronizes against.

    Implementations:
    - AtprotoRemoteSource: PDS/relay over HTTP
    - in-memory fakes in tests
    """

    def get_revision(self, key: str, budget: FetchBudget) -> Optional[str]:
        """Current remote revision of `key`, or None if the remote has none."""
        ...

    def fetch_full(
        self, key: str, budget: FetchBudget, on_chunk: Optional[ChunkCallback] = None
    ) -> bytes:
        """Download the complete payload for `key`."""
        ...

    def fetch_delta(
        self,
        key: str,
        since: str,
        budget: FetchBudget,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> bytes:
        """
        Download changes to `key` since revision `since`.

        Raises:
            UnsupportedOperation: the remote cannot serve deltas
        """
        ...

    def list_targets(self, cursor: Optional[str], budget: FetchBudget) -> TargetPage:
        """One page of keys to synchronize in a bulk run."""
        ...


def did_for_key(key: str) -> str:
    """Strip a known entity-kind prefix ("blocks:did:plc:x" -> "did:plc:x")."""
    if get_kind_for_key(key) is None:
        return key
    return key.partition(":")[2]


class AtprotoRemoteSource:
    """
    RemoteSource backed by AT Protocol XRPC endpoints.

    Repository reads try the account's PDS first and fall back to the relay.
    Bulk targets are the subject account's follows, listed through the
    public AppView.
    """

    def __init__(
        self,
        subject_did: Optional[str] = None,
        pds_url: Optional[str] = None,
        relay_url: str = "https://bsky.network",
        public_api_url: str = "https://public.api.bsky.app",
        target_kind: str = "blocks",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.subject_did = subject_did
        self.pds_url = pds_url.rstrip("/") if pds_url else None
        self.relay_url = relay_url.rstrip("/")
        self.public_api_url = public_api_url.rstrip("/")
        self.target_kind = target_kind
        self._session = session or requests.Session()
        self._sleep = sleep

    def _endpoints(self) -> List[str]:
        return [url for url in (self.pds_url, self.relay_url) if url]

    @staticmethod
    def _timeout(budget: FetchBudget) -> Optional[float]:
        remaining = budget.remaining()
        if remaining is None:
            return None
        if remaining <= 0:
            raise FetchTimeout(f"Remote call exceeded {budget.timeout_seconds}s")
        return remaining

    def _get(self, url: str, params: Dict[str, Any], budget: FetchBudget, stream: bool = False):
        budget.check()
        try:
            return self._session.get(
                url, params=params, timeout=self._timeout(budget), stream=stream
            )
        except requests.Timeout as e:
            raise FetchTimeout(f"Request to {url} timed out: {e}") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"Request to {url} failed: {e}") from e

    @staticmethod
    def _json_body(response: requests.Response, url: str) -> Dict[str, Any]:
        """Decode a JSON object body; anything else is a NetworkFailure."""
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkFailure(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(data, dict):
            raise NetworkFailure(f"Unexpected response body from {url}")
        return data

    # =========================================================================
    # Revisions
    # =========================================================================

    def get_revision(self, key: str, budget: FetchBudget) -> Optional[str]:
        did = did_for_key(key)
        last_error: Optional[Exception] = None
        for base in self._endpoints():
            url = f"{base}/xrpc/com.atproto.sync.getLatestCommit"
            try:
                response = self._get(url, {"did": did}, budget)
            except FetchTimeout:
                raise
            except NetworkFailure as e:
                last_error = e
                continue
            if response.status_code == 404:
                return None
            if response.ok:
                try:
                    data = self._json_body(response, url)
                except NetworkFailure as e:
                    logger.warning(f"Revision lookup for {did} at {base} unusable: {e}")
                    last_error = e
                    continue
                return data.get("rev") or data.get("cid")
            last_error = NetworkFailure(f"getLatestCommit returned {response.status_code}")
            logger.debug(f"Revision lookup for {did} failed at {base}: {response.status_code}")

        raise last_error or NetworkFailure(f"No endpoint available for {did}")

    # =========================================================================
    # Payloads
    # =========================================================================

    def fetch_full(
        self, key: str, budget: FetchBudget, on_chunk: Optional[ChunkCallback] = None
    ) -> bytes:
        return self._download_repo(key, None, budget, on_chunk)

    def fetch_delta(
        self,
        key: str,
        since: str,
        budget: FetchBudget,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> bytes:
        return self._download_repo(key, since, budget, on_chunk)

    def _download_repo(
        self,
        key: str,
        since: Optional[str],
        budget: FetchBudget,
        on_chunk: Optional[ChunkCallback],
    ) -> bytes:
        did = did_for_key(key)
        params = {"did": did}
        if since:
            params["since"] = since

        last_error: Optional[Exception] = None
        for base in self._endpoints():
            url = f"{base}/xrpc/com.atproto.sync.getRepo"
            try:
                response = self._get(url, params, budget, stream=True)
            except FetchTimeout:
                raise
            except NetworkFailure as e:
                logger.warning(f"Repo download from {base} failed, trying next: {e}")
                last_error = e
                continue

            with response:
                if response.ok:
                    return self._read_body(response, budget, on_chunk)
                if response.status_code == 400 and since:
                    raise UnsupportedOperation(f"{base} does not support incremental sync")
                logger.warning(f"Repo download from {base} returned {response.status_code}")
                last_error = NetworkFailure(
                    f"Failed to download repo: {response.status_code}"
                )

        raise last_error or NetworkFailure(f"No endpoint available for {did}")

    @staticmethod
    def _read_body(
        response: requests.Response,
        budget: FetchBudget,
        on_chunk: Optional[ChunkCallback],
    ) -> bytes:
        total_header = response.headers.get("Content-Length")
        total = int(total_header) if total_header and total_header.isdigit() else None
        chunks: List[bytes] = []
        received = 0
        try:
            for part in response.iter_content(chunk_size=CHUNK_SIZE):
                if not part:
                    continue
                chunks.append(part)
                received += len(part)
                budget.check(received)
                if on_chunk is not None:
                    on_chunk(received, total)
        except requests.Timeout as e:
            raise FetchTimeout(f"Download stalled: {e}") from e
        except requests.RequestException as e:
            raise NetworkFailure(f"Download interrupted: {e}") from e
        return b"".join(chunks)

    # =========================================================================
    # Targets
    # =========================================================================

    def list_targets(self, cursor: Optional[str], budget: FetchBudget) -> TargetPage:
        if not self.subject_did:
            raise NetworkFailure("No subject account configured for target listing")

        params = {"actor": self.subject_did, "limit": FOLLOWS_PAGE_LIMIT}
        if cursor:
            params["cursor"] = cursor
        url = f"{self.public_api_url}/xrpc/app.bsky.graph.getFollows"

        for attempt in range(RATE_LIMIT_RETRIES + 1):
            response = self._get(url, params, budget)
            if response.status_code != 429:
                break
            delay = RATE_LIMIT_BACKOFF_SECONDS * (2 ** attempt)
            logger.info(f"Rate limited listing follows, retrying in {delay}s")
            self._sleep(delay)
            budget.check()

        if not response.ok:
            raise NetworkFailure(f"Failed to get follows: {response.status_code}")

        data = self._json_body(response, url)
        follows = data.get("follows") or []
        if not isinstance(follows, list):
            raise NetworkFailure(f"Unexpected follows listing from {url}")
        items = [
            f"{self.target_kind}:{follow['did']}"
            for follow in follows
            if isinstance(follow, dict) and follow.get("did")
        ]
        return TargetPage(items=items, cursor=data.get("cursor"))
