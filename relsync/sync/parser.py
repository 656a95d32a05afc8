"""
Record parsers: bytes in, domain records out.
"""
import json
import logging
from typing import Any, Dict, Protocol, Tuple

from relsync.errors import IncompleteBaseData, ParseFailure

logger = logging.getLogger("relsync.parser")

# Messages raised by archive decoders when a delta references blocks it does not carry
INCOMPLETE_BASE_MARKERS: Tuple[str, ...] = ("cid not found", "blockmap", "block not found")


class RecordParser(Protocol):
    def parse(self, data: bytes) -> Any:
        """
        Decode a payload into domain records.

        Records are stored as JSON: they must be JSON-serializable, and
        tuples come back from the cache as lists.

        Raises:
            IncompleteBaseData: a delta payload lacks records it references
            ParseFailure: any other decoding error
        """
        ...


def is_incomplete_base_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in INCOMPLETE_BASE_MARKERS)


class JsonRecordParser:
    """Parses JSON exports of the form {"<collection>": [records...]}."""

    def parse(self, data: bytes) -> Dict[str, Any]:
        try:
            records = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseFailure(f"Invalid JSON payload: {e}") from e
        if not isinstance(records, dict):
            raise ParseFailure(f"Expected an object, got {type(records).__name__}")
        return records


class ClassifyingParser:
    """
    Wraps an external decoder and sorts its errors into the engine taxonomy.

    Decoders that only raise generic exceptions still let the engine tell an
    incomplete delta (fall back to full fetch) from a corrupt payload.
    """

    def __init__(self, inner: RecordParser):
        self._inner = inner

    def parse(self, data: bytes) -> Any:
        try:
            return self._inner.parse(data)
        except ParseFailure as e:
            if not isinstance(e, IncompleteBaseData) and is_incomplete_base_error(e):
                raise IncompleteBaseData(str(e)) from e
            raise
        except Exception as e:
            if is_incomplete_base_error(e):
                raise IncompleteBaseData(str(e)) from e
            logger.debug(f"Parser raised {type(e).__name__}: {e}")
            raise ParseFailure(str(e)) from e
