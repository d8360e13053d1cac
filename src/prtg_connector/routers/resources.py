import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from prtg_connector.dependencies.prtg_datasource import get_datasource
from prtg_connector.services.datasource import PrtgDatasource, ResourceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resources", tags=["Resources"])

datasource_dependency = Depends(get_datasource)


@router.get("/{path:path}")
async def call_resource(path: str, datasource: PrtgDatasource = datasource_dependency):
    """Group, device, sensor and channel listings for query editors."""
    try:
        return await datasource.call_resource(path)
    except ResourceError as exc:
        return JSONResponse(status_code=exc.status, content={"error": exc.message})
