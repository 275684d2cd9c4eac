from __future__ import annotations

import re
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, Set, Tuple

__all__ = [
    "TIMESTAMP_FORMAT",
    "NameAllocator",
    "format_timestamp",
    "parse_standard_name",
    "standard_name",
]

TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"
SERIAL_WIDTH = 3

_STANDARD_NAME = re.compile(r"^(?P<ts>\d{4}-\d{2}-\d{2}-\d{6})-(?P<serial>\d{3,})(?P<ext>\.[A-Za-z0-9]+)$")


def format_timestamp(value: datetime) -> str:
    """Format a capture time as the fixed-width, sortable name prefix.

    Aware datetimes are converted to UTC; naive values (EXIF) are used as written.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def standard_name(timestamp: str, serial: int, ext: str) -> str:
    if serial < 1:
        raise ValueError("serial numbers start at 1")
    return f"{timestamp}-{serial:0{SERIAL_WIDTH}d}{ext.lower()}"


def parse_standard_name(name: str) -> Tuple[str, int, str]:
    """Split a standard name into ``(timestamp, serial, ext)``.

    Raises:
        ValueError: If ``name`` is not a standard name.
    """
    match = _STANDARD_NAME.match(name)
    if not match:
        raise ValueError(f"not a standard name: {name!r}")
    return match.group("ts"), int(match.group("serial")), match.group("ext")


class NameAllocator:
    """Allocates ``YYYY-MM-DD-HHMMSS-SSS<ext>`` names per destination namespace.

    The serial for a timestamp is ``max(existing serials) + 1`` within the
    namespace, regardless of extension. Scan and assignment happen under one
    lock so concurrent callers never receive the same name.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._allocated: Dict[str, Set[str]] = defaultdict(set)

    def reserve(self, namespace: str, names: Iterable[str]) -> None:
        """Mark already-used names so allocation continues after them."""
        with self._lock:
            for name in names:
                try:
                    parse_standard_name(name)
                except ValueError:
                    continue
                self._allocated[namespace].add(name)

    def allocate(self, namespace: str, captured_at: datetime, ext: str) -> str:
        timestamp = format_timestamp(captured_at)
        with self._lock:
            serials = [0]
            for existing in self._allocated[namespace]:
                existing_ts, serial, _ = parse_standard_name(existing)
                if existing_ts == timestamp:
                    serials.append(serial)
            name = standard_name(timestamp, max(serials) + 1, ext)
            self._allocated[namespace].add(name)
            return name

    def allocated(self, namespace: str) -> Set[str]:
        with self._lock:
            return set(self._allocated.get(namespace, ()))
