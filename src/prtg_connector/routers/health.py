from fastapi import APIRouter, Depends, status

from prtg_connector.dependencies.prtg_datasource import get_datasource
from prtg_connector.schemas.query_schemas import HealthCheckSchema
from prtg_connector.services.datasource import PrtgDatasource

router = APIRouter(prefix="/api", tags=["Health"])

datasource_dependency = Depends(get_datasource)


@router.get("/health", response_model=HealthCheckSchema, status_code=status.HTTP_200_OK)
async def health_check(datasource: PrtgDatasource = datasource_dependency):
    """
    Check the PRTG connection.

    Caches are cleared first. The result is reported in the body; the HTTP
    status stays 200 so callers can read the message.
    """
    return await datasource.check_health()
