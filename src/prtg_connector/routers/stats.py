"""
Connector statistics.

Counters from the stats observer plus the current cache sizes and the number
of live streams, and the same registry in Prometheus text format.
"""

from typing import Any

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from prtg_connector.dependencies.prtg_datasource import get_datasource
from prtg_connector.services.datasource import PrtgDatasource

router = APIRouter(prefix="/api/prtg", tags=["Stats"])

datasource_dependency = Depends(get_datasource)


# ============================================================================
# Response Models
# ============================================================================


class ConnectorStatsResponse(BaseModel):
    queries: dict[str, dict[str, float]] = Field(default_factory=dict)
    api_requests: dict[str, dict[str, int]] = Field(default_factory=dict)
    cache: dict[str, dict[str, int]] = Field(default_factory=dict)
    errors: dict[str, int] = Field(default_factory=dict)
    response_cache_entries: int = 0
    query_cache_entries: int = 0
    active_streams: int = 0


class CacheClearResponse(BaseModel):
    status: str
    message: str


@router.get("/stats", response_model=ConnectorStatsResponse)
async def get_stats(datasource: PrtgDatasource = datasource_dependency) -> dict[str, Any]:
    return datasource.stats()


@router.get("/metrics", response_class=Response)
async def get_metrics(datasource: PrtgDatasource = datasource_dependency) -> Response:
    return Response(content=datasource.metrics_exposition(), media_type=CONTENT_TYPE_LATEST)


@router.post("/cache/clear", response_model=CacheClearResponse)
async def clear_cache(datasource: PrtgDatasource = datasource_dependency):
    datasource.clear_caches()
    return CacheClearResponse(status="success", message="Response and query caches cleared")
