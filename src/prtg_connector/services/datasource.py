import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from prtg_connector.external_services.prtg_api_client import PrtgApiClient, PrtgApiError
from prtg_connector.schemas.query_schemas import HealthCheckSchema
from prtg_connector.schemas.settings_schemas import PluginSettings
from prtg_connector.services.datetime_normalizer import DatetimeNormalizer, resolve_timezone
from prtg_connector.services.frame_assembler import FrameAssembler
from prtg_connector.services.observer import QueryObserver, StatsObserver
from prtg_connector.services.query_cache import QueryResultCache
from prtg_connector.services.query_service import QueryService
from prtg_connector.services.response_cache import ResponseCache
from prtg_connector.services.stream_manager import StreamManager

logger = logging.getLogger(__name__)

RESOURCE_PARAMETERS = {"devices": "group", "sensors": "device", "channels": "sensor"}


class ResourceError(Exception):
    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(message)


class PrtgDatasource:
    """One configured PRTG connection with its caches, query service and stream registry."""

    def __init__(
        self,
        settings: PluginSettings,
        *,
        observer: QueryObserver | None = None,
        request_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.observer: QueryObserver = observer if observer is not None else StatsObserver()
        timezone = resolve_timezone(settings.timezone)

        self.response_cache = ResponseCache(clock)
        self.client = PrtgApiClient(
            settings.base_url,
            settings.api_key.get_secret_value(),
            settings.cache_time,
            timezone=timezone,
            timeout=request_timeout,
            cache=self.response_cache,
            observer=self.observer,
            transport=transport,
        )
        self.assembler = FrameAssembler(self.client, DatetimeNormalizer(timezone), self.observer)
        self.query_cache = QueryResultCache(clock)
        self.query_service = QueryService(
            self.assembler, self.query_cache, settings.cache_time, observer=self.observer
        )
        self.stream_manager = StreamManager(self.assembler, observer=self.observer, clock=clock)

    def clear_caches(self) -> None:
        self.response_cache.clear()
        self.query_cache.clear()
        logger.info("PRTG caches cleared")

    async def aclose(self) -> None:
        await self.client.aclose()

    async def check_health(self) -> HealthCheckSchema:
        """Clear caches, then confirm the token and reachability via ``status.json``."""
        self.clear_caches()

        if not self.settings.has_api_key:
            logger.error("API key is missing in configuration")
            self.observer.record_error("missing_api_key")
            return HealthCheckSchema(status="ERROR", message="API key is required but not configured")

        try:
            status = await self.client.get_status()
        except PrtgApiError as exc:
            logger.error("Failed to connect to PRTG server: url=%s error=%s", self.settings.base_url, exc)
            self.observer.record_error("connection_failed")
            return HealthCheckSchema(status="ERROR", message=f"PRTG API error: {exc}")

        version = status.version or status.prtg_version
        if not version:
            self.observer.record_error("invalid_response")
            return HealthCheckSchema(status="ERROR", message="Invalid response from PRTG server")

        logger.info("Health check successful: prtg_version=%s url=%s", version, self.settings.base_url)
        return HealthCheckSchema(
            status="OK",
            message=f"Data source is working. PRTG Version: {version}",
            details={"version": version, "totalSensors": status.total_sensors},
        )

    async def call_resource(self, path: str) -> dict[str, Any]:
        """Serve ``groups``, ``devices/{group}``, ``sensors/{device}`` or ``channels/{sensorId}``."""
        kind, _, argument = path.strip("/").partition("/")
        if kind not in ("groups", *RESOURCE_PARAMETERS):
            raise ResourceError(404, f"unknown resource path: {path}")
        if kind != "groups" and not argument:
            raise ResourceError(400, f"{RESOURCE_PARAMETERS[kind]} parameter is required")

        started = time.perf_counter()
        try:
            if kind == "groups":
                result: Any = (await self.client.get_groups()).model_dump(by_alias=True)
            elif kind == "devices":
                result = (await self.client.get_devices(argument)).model_dump(by_alias=True)
            elif kind == "sensors":
                result = (await self.client.get_sensors(argument)).model_dump(by_alias=True)
            else:
                result = await self.client.get_channels(argument)
        except PrtgApiError as exc:
            logger.error("Resource call failed: path=%s error=%s", path, exc)
            self.observer.record_error("resource_call")
            raise ResourceError(500, str(exc)) from exc

        logger.info("Resource call completed: path=%s elapsed_ms=%.1f", path, (time.perf_counter() - started) * 1000)
        return result

    def stats(self) -> dict[str, Any]:
        snapshot = self.observer.snapshot() if isinstance(self.observer, StatsObserver) else {}
        return {
            **snapshot,
            "response_cache_entries": len(self.response_cache),
            "query_cache_entries": len(self.query_cache),
            "active_streams": self.stream_manager.active_count,
        }

    def metrics_exposition(self) -> bytes:
        """Prometheus text exposition, empty when the observer keeps no registry."""
        if isinstance(self.observer, StatsObserver):
            return self.observer.exposition()
        return b""
