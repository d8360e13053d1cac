import logging

from fastapi import APIRouter, Depends

from prtg_connector.dependencies.prtg_datasource import get_datasource
from prtg_connector.schemas.query_schemas import QueryRequestSchema, QueryResponseSchema
from prtg_connector.services.datasource import PrtgDatasource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Query"])

datasource_dependency = Depends(get_datasource)


@router.post("/query", response_model=QueryResponseSchema)
async def query_data(payload: QueryRequestSchema, datasource: PrtgDatasource = datasource_dependency):
    """
    Run a batch of panel queries.

    Each entry carries its own ``refId`` and ``queryType``; a failing query only
    reports an error for its own ``refId``.
    """
    results = await datasource.query_service.query_data(payload.queries)
    return QueryResponseSchema(results=results)
