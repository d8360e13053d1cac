import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class ResponseCache:
    """URL-keyed cache of raw upstream response bodies.

    Entries are usable while ``now < expires_at`` and are overwritten wholesale
    on the next successful fetch. Expired entries are dropped lazily on read.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> bytes | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            expires_at, body = entry
            if now < expires_at:
                return body
            self._entries.pop(url, None)
        logger.debug("Response cache expired: url=%s", _redact(url))
        return None

    def set(self, url: str, body: bytes, ttl: float) -> None:
        if ttl <= 0:
            return
        expires_at = self._clock() + ttl
        with self._lock:
            self._entries[url] = (expires_at, body)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _redact(url: str) -> str:
    head, sep, tail = url.partition("apitoken=")
    if not sep:
        return url
    _, amp, rest = tail.partition("&")
    return f"{head}apitoken=***{amp}{rest}"
