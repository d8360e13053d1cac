from . import (  # noqa: F401
    health,
    query,
    resources,
    stats,
    stream,
)

__all__ = [
    "health",
    "query",
    "resources",
    "stats",
    "stream",
]
