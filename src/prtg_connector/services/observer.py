import logging
from typing import Any, Protocol

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)

METRIC_NAMESPACE = "prtg_connector"

# 0.1s doubling up to ~51s, the spread of PRTG historic-data calls
API_LATENCY_BUCKETS = (0.1, 0.2, 0.4, 0.8, 1.6, 3.2, 6.4, 12.8, 25.6, 51.2)


class QueryObserver(Protocol):
    """Instrumentation hook called by the client, query service and stream manager."""

    def observe_query_duration(self, kind: str, seconds: float) -> None: ...

    def observe_api_request(self, endpoint: str, seconds: float, outcome: str) -> None: ...

    def record_cache(self, hit: bool, scope: str) -> None: ...

    def record_error(self, kind: str) -> None: ...


class LoggingObserver:
    """Default observer: debug log lines only."""

    def observe_query_duration(self, kind: str, seconds: float) -> None:
        logger.debug("Query finished: kind=%s elapsed_ms=%.1f", kind, seconds * 1000)

    def observe_api_request(self, endpoint: str, seconds: float, outcome: str) -> None:
        logger.debug("PRTG call observed: endpoint=%s outcome=%s elapsed_ms=%.1f", endpoint, outcome, seconds * 1000)

    def record_cache(self, hit: bool, scope: str) -> None:
        logger.debug("Cache %s: scope=%s", "hit" if hit else "miss", scope)

    def record_error(self, kind: str) -> None:
        logger.debug("Error recorded: kind=%s", kind)


class StatsObserver(LoggingObserver):
    """Prometheus counters and histograms on a registry owned by this observer.

    Each datasource gets its own registry so several instances (and tests) never
    collide on metric names in the process-wide default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._query_duration = Histogram(
            "query_duration_seconds",
            "Duration of panel queries by query kind.",
            ("kind",),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )
        self._api_requests = Counter(
            "api_requests",
            "PRTG API requests by endpoint and outcome.",
            ("endpoint", "outcome"),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )
        self._api_duration = Histogram(
            "api_request_duration_seconds",
            "Duration of PRTG API requests.",
            ("endpoint",),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
            buckets=API_LATENCY_BUCKETS,
        )
        self._cache_hits = Counter(
            "cache_hits",
            "Cache hits by cache scope.",
            ("scope",),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )
        self._cache_misses = Counter(
            "cache_misses",
            "Cache misses by cache scope.",
            ("scope",),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )
        self._errors = Counter(
            "errors",
            "Errors by kind.",
            ("kind",),
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )

    def observe_query_duration(self, kind: str, seconds: float) -> None:
        super().observe_query_duration(kind, seconds)
        self._query_duration.labels(kind=kind).observe(seconds)

    def observe_api_request(self, endpoint: str, seconds: float, outcome: str) -> None:
        super().observe_api_request(endpoint, seconds, outcome)
        self._api_requests.labels(endpoint=endpoint, outcome=outcome).inc()
        self._api_duration.labels(endpoint=endpoint).observe(seconds)

    def record_cache(self, hit: bool, scope: str) -> None:
        super().record_cache(hit, scope)
        (self._cache_hits if hit else self._cache_misses).labels(scope=scope).inc()

    def record_error(self, kind: str) -> None:
        super().record_error(kind)
        self._errors.labels(kind=kind).inc()

    def exposition(self) -> bytes:
        """Registry contents in the Prometheus text format."""
        return generate_latest(self.registry)

    def snapshot(self) -> dict[str, Any]:
        """Current registry values grouped for the JSON stats endpoint."""
        queries: dict[str, dict[str, float]] = {}
        api_requests: dict[str, dict[str, int]] = {}
        cache: dict[str, dict[str, int]] = {}
        errors: dict[str, int] = {}

        prefix = f"{METRIC_NAMESPACE}_"
        for family in self.registry.collect():
            for sample in family.samples:
                name = sample.name.removeprefix(prefix)
                labels = sample.labels
                if name == "query_duration_seconds_count":
                    queries.setdefault(labels["kind"], {})["count"] = int(sample.value)
                elif name == "query_duration_seconds_sum":
                    queries.setdefault(labels["kind"], {})["total_seconds"] = round(sample.value, 6)
                elif name == "api_requests_total":
                    api_requests.setdefault(labels["endpoint"], {})[labels["outcome"]] = int(sample.value)
                elif name == "cache_hits_total":
                    cache.setdefault(labels["scope"], {"hits": 0, "misses": 0})["hits"] = int(sample.value)
                elif name == "cache_misses_total":
                    cache.setdefault(labels["scope"], {"hits": 0, "misses": 0})["misses"] = int(sample.value)
                elif name == "errors_total":
                    errors[labels["kind"]] = int(sample.value)

        return {"queries": queries, "api_requests": api_requests, "cache": cache, "errors": errors}
