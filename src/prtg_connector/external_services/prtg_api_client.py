"""
Async client for the PRTG HTTP/JSON API.

Requests are plain GETs against ``{base}/api/{method}`` authenticated with an
``apitoken`` query parameter. Raw response bodies are cached per fully-built
URL for the configured cache time.

TLS certificate verification is switched off for this client. PRTG servers
are commonly reached over self-signed certificates on internal networks; this
is an explicit trust relaxation for this integration only and the rest of the
service does not inherit it.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, tzinfo
from time import perf_counter
from typing import Any, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
import orjson
from pydantic import BaseModel, ValidationError

from prtg_connector.schemas.prtg_schemas import (
    KeyValueSchema,
    PrtgDeviceListSchema,
    PrtgGroupListSchema,
    PrtgHistoricalDataSchema,
    PrtgManualResponseSchema,
    PrtgSensorListSchema,
    PrtgStatusSchema,
)
from prtg_connector.services.observer import LoggingObserver, QueryObserver
from prtg_connector.services.response_cache import ResponseCache
from prtg_connector.utils.json_flatten import flatten_json

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_TIMEOUT_SECONDS = 10.0
MIN_TIMEOUT_SECONDS = 10.0
MAX_ROWS = "50000"
TABLE_COLUMNS = "active,channel,datetime,device,group,message,objid,priority,sensor,status,tags"
UPSTREAM_DATE_FORMAT = "%Y-%m-%d-%H-%M-%S"


# ============================================================================
# Exceptions
# ============================================================================


class PrtgApiError(Exception):
    """Base class for failures talking to the PRTG API."""


class PrtgUrlError(PrtgApiError):
    """The configured base address cannot be turned into a request URL."""


class PrtgRequestError(PrtgApiError):
    """Network failure or timeout before a response arrived."""


class PrtgAccessDeniedError(PrtgApiError):
    def __init__(self) -> None:
        super().__init__("access denied: please verify API token and permissions")


class PrtgUnexpectedStatusError(PrtgApiError):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"unexpected status code: {status_code}")


class PrtgDecodeError(PrtgApiError):
    """The upstream body is not the JSON shape the endpoint promises."""


def select_average(hours: float) -> str:
    """Pick the historic-data averaging interval (seconds) for a window length.

    PRTG truncates responses above ``count`` rows, so longer windows are
    requested with coarser buckets.
    """
    if hours <= 24:
        return "0"
    if hours <= 168:
        return "300"
    if hours <= 744:
        return "3600"
    return "86400"


class PrtgApiClient:
    """Async PRTG API client with a URL-keyed response cache."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        cache_time: float = 30.0,
        *,
        timezone: tzinfo = UTC,
        timeout: float | None = None,
        cache: ResponseCache | None = None,
        observer: QueryObserver | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.cache_time = max(float(cache_time), 0.0)
        self.timezone = timezone
        self.cache = cache if cache is not None else ResponseCache()
        self.observer: QueryObserver = observer if observer is not None else LoggingObserver()

        self._timeout = DEFAULT_TIMEOUT_SECONDS
        if timeout is not None:
            self.set_timeout(timeout)
        self._client = httpx.AsyncClient(verify=False, transport=transport, follow_redirects=True)

    @property
    def timeout(self) -> float:
        return self._timeout

    def set_timeout(self, seconds: float) -> None:
        """Change the request timeout; non-positive values and values below the floor are ignored."""
        if seconds < MIN_TIMEOUT_SECONDS:
            logger.debug("Ignoring PRTG timeout %.1fs, keeping %.1fs", seconds, self._timeout)
            return
        self._timeout = float(seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    def clear_cache(self) -> None:
        self.cache.clear()

    def build_url(self, method: str, params: Mapping[str, Any] | None = None) -> str:
        """Build the request URL with exactly one ``apitoken`` and sorted query keys."""
        try:
            parts = urlsplit(self.base_url)
        except ValueError as exc:
            raise PrtgUrlError(f"invalid PRTG base address {self.base_url!r}: {exc}") from exc
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise PrtgUrlError(f"invalid PRTG base address {self.base_url!r}")

        # a query embedded in the method joins the params; any fragment is dropped
        target = urlsplit(method)
        query = dict(parse_qsl(target.query, keep_blank_values=True))
        query.update((key, str(value)) for key, value in (params or {}).items())
        query["apitoken"] = self.api_token
        encoded = urlencode(sorted(query.items()))
        return f"{self.base_url}/api/{target.path.lstrip('/')}?{encoded}"

    async def fetch(self, method: str, params: Mapping[str, Any] | None = None) -> bytes:
        """GET ``method`` and return the raw body, serving from the cache while fresh."""
        url = self.build_url(method, params)

        if self.cache_time > 0:
            cached = self.cache.get(url)
            if cached is not None:
                self.observer.record_cache(True, "upstream")
                return cached
            self.observer.record_cache(False, "upstream")

        started = perf_counter()
        try:
            response = await self._client.get(url, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            self._record_failure(method, started, "timeout", exc)
            raise PrtgRequestError(f"request to {method} timed out after {self._timeout:.0f}s") from exc
        except httpx.HTTPError as exc:
            self._record_failure(method, started, "network", exc)
            raise PrtgRequestError(f"request to {method} failed: {exc}") from exc

        elapsed = perf_counter() - started
        if response.status_code == 403:
            logger.warning("PRTG request denied: endpoint=%s status=403 elapsed_ms=%.1f", method, elapsed * 1000)
            self.observer.observe_api_request(method, elapsed, "denied")
            raise PrtgAccessDeniedError()
        if response.status_code != 200:
            logger.warning(
                "PRTG request failed: endpoint=%s status=%s elapsed_ms=%.1f",
                method,
                response.status_code,
                elapsed * 1000,
            )
            self.observer.observe_api_request(method, elapsed, "status")
            raise PrtgUnexpectedStatusError(response.status_code)

        body = response.content
        logger.info(
            "PRTG request: endpoint=%s status=%s elapsed_ms=%.1f size_bytes=%s",
            method,
            response.status_code,
            elapsed * 1000,
            len(body),
        )
        self.observer.observe_api_request(method, elapsed, "ok")
        if self.cache_time > 0:
            self.cache.set(url, body, self.cache_time)
        return body

    def _record_failure(self, method: str, started: float, outcome: str, exc: Exception) -> None:
        elapsed = perf_counter() - started
        logger.warning("PRTG request error: endpoint=%s elapsed_ms=%.1f error=%s", method, elapsed * 1000, exc)
        self.observer.observe_api_request(method, elapsed, outcome)

    async def _fetch_json(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        body = await self.fetch(method, params)
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            raise PrtgDecodeError(f"failed to parse response from {method}: {exc}") from exc

    async def _fetch_model(self, method: str, params: Mapping[str, Any] | None, model: type[ModelT]) -> ModelT:
        data = await self._fetch_json(method, params)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise PrtgDecodeError(f"unexpected response shape from {method}: {exc.error_count()} error(s)") from exc

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_status(self) -> PrtgStatusSchema:
        return await self._fetch_model("status.json", None, PrtgStatusSchema)

    async def get_groups(self) -> PrtgGroupListSchema:
        params = {"content": "groups", "columns": TABLE_COLUMNS, "count": MAX_ROWS}
        return await self._fetch_model("table.json", params, PrtgGroupListSchema)

    async def get_devices(self, group: str = "") -> PrtgDeviceListSchema:
        params = {"content": "devices", "columns": TABLE_COLUMNS, "count": MAX_ROWS}
        if group:
            params["filter_group"] = group
        return await self._fetch_model("table.json", params, PrtgDeviceListSchema)

    async def get_sensors(self, device: str = "") -> PrtgSensorListSchema:
        params = {"content": "sensors", "columns": TABLE_COLUMNS, "count": MAX_ROWS}
        if device:
            params["filter_device"] = device
        return await self._fetch_model("table.json", params, PrtgSensorListSchema)

    async def get_channels(self, sensor_id: str) -> dict[str, Any]:
        """Latest channel values of a sensor; the caption keys name the channels."""
        params = {
            "content": "values",
            "id": sensor_id,
            "columns": "value_,datetime",
            "usecaption": "true",
            "count": MAX_ROWS,
        }
        data = await self._fetch_json("historicdata.json", params)
        if not isinstance(data, dict):
            raise PrtgDecodeError("unexpected response shape from historicdata.json: expected an object")
        return data

    async def get_historical_data(self, sensor_id: str, start: datetime, end: datetime) -> PrtgHistoricalDataSchema:
        """Fetch channel history for ``sensor_id`` between ``start`` and ``end``.

        Dates are sent in the configured source timezone; naive datetimes are
        taken as UTC.
        """
        if not sensor_id:
            raise ValueError("invalid query: missing sensor ID")

        start = _as_aware(start)
        end = _as_aware(end)
        hours = (end - start).total_seconds() / 3600
        if hours <= 0:
            raise ValueError(f"invalid time range: start date {start.isoformat()} must be before end date {end.isoformat()}")

        avg = select_average(hours)
        sdate = start.astimezone(self.timezone).strftime(UPSTREAM_DATE_FORMAT)
        edate = end.astimezone(self.timezone).strftime(UPSTREAM_DATE_FORMAT)
        logger.debug("Historic data window: sensor=%s hours=%.2f avg=%s sdate=%s edate=%s", sensor_id, hours, avg, sdate, edate)

        params = {
            "id": sensor_id,
            "columns": "datetime,value_",
            "sdate": sdate,
            "edate": edate,
            "count": MAX_ROWS,
            "avg": avg,
            "pctshow": "false",
            "pctmode": "false",
            "usecaption": "1",
        }
        return await self._fetch_model("historicdata.json", params, PrtgHistoricalDataSchema)

    async def execute_manual_method(self, method: str, object_id: str = "") -> PrtgManualResponseSchema:
        """Call an arbitrary API method and flatten its JSON object response."""
        params = {"id": object_id} if object_id else {}
        data = await self._fetch_json(method, params)
        if not isinstance(data, dict):
            raise PrtgDecodeError(f"failed to parse response from {method}: expected a JSON object")
        pairs = [KeyValueSchema(key=key, value=value) for key, value in flatten_json(data)]
        return PrtgManualResponseSchema(raw=data, key_values=pairs)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
