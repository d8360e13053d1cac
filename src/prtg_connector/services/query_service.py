import asyncio
import logging
from collections.abc import Mapping
from time import perf_counter
from typing import Any

from pydantic import ValidationError

from prtg_connector.schemas.frame_schemas import FrameSchema
from prtg_connector.schemas.query_schemas import QueryModel, QueryResultSchema
from prtg_connector.services.frame_assembler import FrameAssembler, QueryError
from prtg_connector.services.observer import LoggingObserver, QueryObserver
from prtg_connector.services.query_cache import QueryResultCache, cache_ttl, query_fingerprint

logger = logging.getLogger(__name__)

MAX_CONCURRENT_QUERIES = 25
TOO_MANY_QUERIES_STATUS = 429
KNOWN_QUERY_KINDS = frozenset({"metrics", "manual", "text", "raw"})


class QueryService:
    """Classifies panel queries, serves them from the result cache or assembles fresh frames."""

    def __init__(
        self,
        assembler: FrameAssembler,
        cache: QueryResultCache,
        default_cache_time: float = 30.0,
        *,
        observer: QueryObserver | None = None,
        max_queries: int = MAX_CONCURRENT_QUERIES,
    ):
        self.assembler = assembler
        self.cache = cache
        self.default_cache_time = default_cache_time
        self.observer: QueryObserver = observer if observer is not None else LoggingObserver()
        self.max_queries = max_queries

    async def query_data(self, raw_queries: list[Mapping[str, Any]]) -> dict[str, QueryResultSchema]:
        """Run a batch; results are keyed by each query's own ``refId``."""
        if len(raw_queries) > self.max_queries:
            first_ref = _ref_id_of(raw_queries[0])
            logger.warning(
                "Rejecting query batch: size=%d limit=%d first_ref=%s", len(raw_queries), self.max_queries, first_ref
            )
            self.observer.record_error("too_many_queries")
            message = f"too many concurrent queries: {len(raw_queries)} exceeds limit of {self.max_queries}"
            return {first_ref: QueryResultSchema(error=message, status=TOO_MANY_QUERIES_STATUS)}

        pairs = await asyncio.gather(*(self._run_one(raw) for raw in raw_queries))
        return dict(pairs)

    async def _run_one(self, raw: Mapping[str, Any]) -> tuple[str, QueryResultSchema]:
        ref_id = _ref_id_of(raw)
        try:
            query = QueryModel.model_validate(raw)
        except ValidationError as exc:
            logger.error("Query parsing failed: ref_id=%s errors=%d", ref_id, exc.error_count())
            self.observer.record_error("query_parse_error")
            return ref_id, QueryResultSchema(error="failed to parse query", status=400)

        try:
            frames = await self.execute(query, raw)
        except QueryError as exc:
            logger.error("Query execution failed: ref_id=%s kind=%s error=%s", ref_id, query.query_type, exc.message)
            self.observer.record_error("query_execution")
            return ref_id, QueryResultSchema(error=exc.message, status=exc.status)
        except Exception as exc:
            logger.exception("Unexpected failure for query %s", ref_id)
            self.observer.record_error("query_internal")
            return ref_id, QueryResultSchema(error=f"internal error: {exc}", status=500)
        return ref_id, QueryResultSchema(frames=frames)

    async def execute(self, query: QueryModel, raw: Mapping[str, Any]) -> list[FrameSchema]:
        kind = query.query_type
        if kind not in KNOWN_QUERY_KINDS:
            logger.warning("Unknown query type: type=%r ref_id=%s", kind, query.ref_id)
            self.observer.record_error("unknown_query_type")
            return []

        key = query_fingerprint(query, raw)
        cached = self.cache.get(key)
        if cached is not None:
            self.observer.record_cache(True, "query")
            logger.debug("Query cache hit: ref_id=%s kind=%s", query.ref_id, kind)
            return cached
        stale = self.cache.get_stale_if_updating(key)
        if stale is not None:
            self.observer.record_cache(True, "query_stale")
            return stale
        self.observer.record_cache(False, "query")

        self.cache.mark_updating(key)
        started = perf_counter()
        try:
            frames = await self._dispatch(query)
        except BaseException:
            self.cache.release(key)
            raise
        finally:
            elapsed = perf_counter() - started
            self.observer.observe_query_duration(kind, elapsed)

        window = query.time_range.duration_seconds if query.time_range is not None else 0.0
        ttl = cache_ttl(kind, window, self.default_cache_time)
        self.cache.store(key, frames, ttl)
        logger.info(
            "Query completed: ref_id=%s kind=%s frames=%d elapsed_ms=%.1f ttl_s=%.0f",
            query.ref_id,
            kind,
            len(frames),
            elapsed * 1000,
            ttl,
        )
        return frames

    async def _dispatch(self, query: QueryModel) -> list[FrameSchema]:
        if query.query_type == "metrics":
            if query.time_range is None:
                raise QueryError(400, "time range is required for metrics queries")
            return await self.assembler.metrics_frames(query, query.time_range.start, query.time_range.end)
        if query.query_type == "manual":
            return await self.assembler.manual_frames(query)
        return await self.assembler.property_frames(query)

    def clear_cache(self) -> None:
        self.cache.clear()


def _ref_id_of(raw: Mapping[str, Any]) -> str:
    ref_id = raw.get("refId") if isinstance(raw, Mapping) else None
    return str(ref_id) if ref_id else "A"
