import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import orjson

from prtg_connector.schemas.frame_schemas import FrameSchema
from prtg_connector.schemas.query_schemas import QueryModel

# Keys that only change how a result is labelled or scheduled by the host.
DISPLAY_ONLY_KEYS = frozenset(
    {
        "includeGroupName",
        "includeDeviceName",
        "includeSensorName",
        "cacheTime",
        "datasource",
        "hide",
        "key",
        "intervalMs",
        "maxDataPoints",
    }
)

SHORT_WINDOW_SECONDS = 3600
DAY_WINDOW_SECONDS = 86400
SHORT_WINDOW_TTL = 6.0
DAY_WINDOW_TTL = 30.0


def query_fingerprint(query: QueryModel, raw: Mapping[str, Any]) -> str:
    """Cache key over the fields that change what a query returns."""
    if query.time_range is not None:
        window = f"{query.time_range.from_ms // 1000}-{query.time_range.to_ms // 1000}"
    else:
        window = "0-0"
    params = {key: value for key, value in raw.items() if key not in DISPLAY_ONLY_KEYS}
    serialized = orjson.dumps(params, option=orjson.OPT_SORT_KEYS, default=str).decode()
    return "|".join(
        (
            query.ref_id,
            query.query_type,
            query.sensor_id,
            ",".join(query.channels),
            window,
            query.property_name,
            query.filter_property,
            serialized,
        )
    )


def cache_ttl(kind: str, window_seconds: float, default: float) -> float:
    """Validity window for a stored result; short recent windows stay fresher."""
    if kind == "manual":
        return default
    if window_seconds <= SHORT_WINDOW_SECONDS:
        return SHORT_WINDOW_TTL
    if window_seconds <= DAY_WINDOW_SECONDS:
        return DAY_WINDOW_TTL
    return default


@dataclass(slots=True)
class QueryCacheEntry:
    frames: list[FrameSchema]
    valid_until: float
    updating: bool = False


class QueryResultCache:
    """Per-query result cache keyed by fingerprint.

    Entries are replaced wholesale and only go away on :meth:`clear`. The
    ``updating`` flag is a hint that a recomputation is already running for an
    expired entry; it is not a lock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, QueryCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> list[FrameSchema] | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now < entry.valid_until:
                return entry.frames
        return None

    def get_stale_if_updating(self, key: str) -> list[FrameSchema] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.updating:
                return entry.frames
        return None

    def mark_updating(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.updating = True

    def release(self, key: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.updating = False

    def store(self, key: str, frames: Iterable[FrameSchema], ttl: float) -> None:
        entry = QueryCacheEntry(frames=list(frames), valid_until=self._clock() + ttl)
        with self._lock:
            self._entries[key] = entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
