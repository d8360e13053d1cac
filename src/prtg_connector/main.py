import asyncio
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from prtg_connector.dependencies.prtg_datasource import Settings, build_datasource, get_settings
from prtg_connector.routers import health, query, resources, stats, stream
from prtg_connector.services.datasource import PrtgDatasource

logger = logging.getLogger(__name__)

load_dotenv()

tags_metadata = [
    {"name": "Root", "description": "Basic status endpoint."},
    {"name": "Query", "description": "Metrics, manual and property queries against PRTG."},
    {"name": "Resources", "description": "Group, device, sensor and channel listings."},
    {"name": "Health", "description": "PRTG connectivity check."},
    {"name": "Stream", "description": "Live sensor streams."},
    {"name": "Stats", "description": "Connector counters and cache sizes."},
]


@asynccontextmanager
async def _lifespan(app: FastAPI):
    logger.info("PRTG connector started")
    try:
        yield
    except asyncio.CancelledError:
        logger.info("Application shutdown requested (CancelledError). Exiting gracefully.")
    finally:
        datasource: PrtgDatasource = app.state.datasource
        await datasource.aclose()
        logger.info("PRTG client closed")


def create_app(settings: Settings | None = None, datasource: PrtgDatasource | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        openapi_tags=tags_metadata,
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.datasource = datasource if datasource is not None else build_datasource(settings)

    @app.get("/", tags=["Root"])
    async def root():
        return {"message": settings.app_name}

    app.add_middleware(GZipMiddleware, minimum_size=1000, compresslevel=6)

    cors_origins = settings.cors_origin_list
    logger.info("CORS enabled for origins: %s", cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(query.router)
    app.include_router(resources.router)
    app.include_router(health.router)
    app.include_router(stream.router)
    app.include_router(stats.router)
    return app


app = create_app()
