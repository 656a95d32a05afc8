"""
Clock, identity and formatting helpers.
"""
import time
import uuid
from typing import Any, List, Protocol, Sequence, TypeVar

T = TypeVar("T")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id(prefix: str) -> str:
    """
    Generate a unique identifier with a readable prefix.

    Args:
        prefix: Short label, e.g. "bulk"

    Returns:
        String like "bulk_1718000000000_3f2a9c1e0b"
    """
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex[:10]}"


class Clock(Protocol):
    """Time source used by the cache, queue and orchestrator."""

    def now_ms(self) -> int:
        ...


class SystemClock:
    """Clock backed by the system time."""

    def now_ms(self) -> int:
        return now_ms()


def format_bytes(num_bytes: int) -> str:
    """Human readable byte count (B / KB / MB)."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """Split a sequence into lists of at most `size` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int, handling None and invalid values.

    Args:
        value: Any value to convert
        default: Default int if conversion fails

    Returns:
        Integer or default
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
