import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from prtg_connector.external_services.prtg_api_client import PrtgApiClient, PrtgApiError
from prtg_connector.schemas.frame_schemas import FieldType, FrameFieldSchema, FrameSchema, time_field, value_field
from prtg_connector.schemas.prtg_schemas import PrtgHistoricalDataSchema, PrtgTableItemSchema
from prtg_connector.schemas.query_schemas import QueryModel
from prtg_connector.services.datetime_normalizer import DatetimeNormalizer, DatetimeParseError
from prtg_connector.services.observer import LoggingObserver, QueryObserver
from prtg_connector.utils.json_flatten import format_scalar

logger = logging.getLogger(__name__)


class QueryError(Exception):
    """A query that cannot be answered; ``status`` follows HTTP semantics."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(message)


# ============================================================================
# Property lookups
# ============================================================================

STATUS_MARKUP = ('<div class="status">', '<div class="moreicon">', "</div>")


def clean_message_html(message: str) -> str:
    """Strip the status markup PRTG wraps around formatted messages."""
    for token in STATUS_MARKUP:
        message = message.replace(token, "")
    return message.strip()


PropertyAccessor = Callable[[PrtgTableItemSchema], Any]

PROPERTY_ACCESSORS: dict[str, PropertyAccessor] = {
    "active": lambda item: item.active,
    "active_raw": lambda item: item.active_raw,
    "message": lambda item: clean_message_html(item.message),
    "message_raw": lambda item: item.message_raw,
    "priority": lambda item: item.priority,
    "priority_raw": lambda item: item.priority_raw,
    "status": lambda item: item.status,
    "status_raw": lambda item: item.status_raw,
    "tags": lambda item: item.tags,
    "tags_raw": lambda item: item.tags_raw,
}


@dataclass(frozen=True, slots=True)
class EntityLookup:
    """How to list and match one entity type for a property query."""

    load: Callable[[PrtgApiClient, QueryModel], Awaitable[list[PrtgTableItemSchema]]]
    name_of: Callable[[PrtgTableItemSchema], str]
    target: Callable[[QueryModel], str]
    multi: bool
    requires: str | None = None


async def _load_groups(client: PrtgApiClient, query: QueryModel) -> list[PrtgTableItemSchema]:
    return (await client.get_groups()).groups


async def _load_devices(client: PrtgApiClient, query: QueryModel) -> list[PrtgTableItemSchema]:
    return (await client.get_devices(query.group)).devices


async def _load_sensors(client: PrtgApiClient, query: QueryModel) -> list[PrtgTableItemSchema]:
    return (await client.get_sensors(query.device)).sensors


ENTITY_LOOKUPS: dict[str, EntityLookup] = {
    "group": EntityLookup(_load_groups, lambda item: item.group, lambda query: query.group, multi=True),
    "device": EntityLookup(
        _load_devices, lambda item: item.device, lambda query: query.device, multi=False, requires="group"
    ),
    "sensor": EntityLookup(
        _load_sensors, lambda item: item.sensor, lambda query: query.sensor, multi=False, requires="device"
    ),
}


def typed_values(values: list[Any]) -> tuple[list[Any], FieldType]:
    """Give a column one type: all numeric -> number, all text -> string, otherwise stringified."""
    if values and all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in values):
        return [float(value) for value in values], "number"
    if all(isinstance(value, str) for value in values):
        return list(values), "string"
    return [format_scalar(value) for value in values], "string"


def coerce_channel_value(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class FrameAssembler:
    """Builds result frames for the metrics, manual and property query kinds."""

    def __init__(
        self,
        client: PrtgApiClient,
        normalizer: DatetimeNormalizer,
        observer: QueryObserver | None = None,
    ):
        self.client = client
        self.normalizer = normalizer
        self.observer: QueryObserver = observer if observer is not None else LoggingObserver()

    # ------------------------------------------------------------------
    # metrics
    # ------------------------------------------------------------------

    async def fetch_history(self, sensor_id: str, start: datetime, end: datetime) -> PrtgHistoricalDataSchema:
        try:
            return await self.client.get_historical_data(sensor_id, start, end)
        except ValueError as exc:
            self.observer.record_error("historical_data_params")
            raise QueryError(400, str(exc)) from exc
        except PrtgApiError as exc:
            logger.error("Failed to fetch historical data: sensor=%s error=%s", sensor_id, exc)
            self.observer.record_error("historical_data_fetch")
            raise QueryError(500, f"failed to fetch data: {exc}") from exc

    def channel_series(self, history: PrtgHistoricalDataSchema, channel: str) -> tuple[list[int], list[float]]:
        """Walk history rows for one channel; rows without a usable time or value are skipped."""
        times: list[int] = []
        values: list[float] = []
        for row in history.histdata:
            if channel not in row.values:
                continue
            value = coerce_channel_value(row.values[channel])
            if value is None:
                continue
            try:
                instant, _ = self.normalizer.parse(row.datetime)
            except DatetimeParseError:
                continue
            times.append(to_epoch_ms(instant))
            values.append(value)
        return times, values

    async def metrics_frames(self, query: QueryModel, start: datetime, end: datetime) -> list[FrameSchema]:
        channels = query.channels
        if not channels:
            self.observer.record_error("missing_channel")
            raise QueryError(400, "channel selection required")

        logger.debug("Fetching historical data: sensor=%s channels=%s", query.sensor_id, channels)
        history = await self.fetch_history(query.sensor_id, start, end)

        base_name = f"metrics_{query.ref_id}"
        frames: list[FrameSchema] = []
        for channel in channels:
            times, values = self.channel_series(history, channel)
            frames.append(
                FrameSchema(
                    name=f"{base_name}_{channel}",
                    fields=[time_field(times), value_field(values, "number", metric_display_name(query, channel))],
                    meta={
                        "type": "timeseries-multi",
                        "custom": {
                            "from": to_epoch_ms(start),
                            "to": to_epoch_ms(end),
                            "channel": channel,
                            "stable": True,
                            "timezone": "UTC",
                        },
                    },
                )
            )
        logger.debug("Assembled %d metric frame(s) for sensor %s", len(frames), query.sensor_id)
        return frames

    # ------------------------------------------------------------------
    # manual
    # ------------------------------------------------------------------

    async def manual_frames(self, query: QueryModel) -> list[FrameSchema]:
        if not query.manual_method:
            self.observer.record_error("missing_manual_method")
            raise QueryError(400, "manual method is required")

        logger.debug("Executing manual method: method=%s object_id=%s", query.manual_method, query.manual_object_id)
        try:
            response = await self.client.execute_manual_method(query.manual_method, query.manual_object_id)
        except PrtgApiError as exc:
            logger.error("Manual query failed: method=%s error=%s", query.manual_method, exc)
            self.observer.record_error("manual_query_failed")
            raise QueryError(500, f"API request failed: {exc}") from exc

        keys = [pair.key for pair in response.key_values]
        values = [format_scalar(pair.value) for pair in response.key_values]
        frame = FrameSchema(
            name=f"manual_{query.ref_id}",
            fields=[
                FrameFieldSchema(name="Key", type="string", values=keys, config={"displayName": "Property"}),
                FrameFieldSchema(name="Value", type="string", values=values, config={"displayName": "Value"}),
            ],
            meta={"type": "table", "custom": response.raw},
        )
        return [frame]

    # ------------------------------------------------------------------
    # text / raw properties
    # ------------------------------------------------------------------

    async def property_frames(self, query: QueryModel) -> list[FrameSchema]:
        entity = query.property_name
        filter_property = query.filter_property
        if query.query_type == "raw" and not filter_property.endswith("_raw"):
            filter_property += "_raw"

        lookup = ENTITY_LOOKUPS.get(entity)
        if lookup is None:
            raise QueryError(400, f"unsupported property type: {entity!r}")
        if lookup.requires and not getattr(query, lookup.requires):
            raise QueryError(400, f"{lookup.requires} parameter is required for {entity} query")

        try:
            items = await lookup.load(self.client, query)
        except PrtgApiError as exc:
            logger.error("Property lookup failed: property=%s error=%s", entity, exc)
            self.observer.record_error("property_query_failed")
            raise QueryError(500, f"API request failed: {exc}") from exc

        accessor = PROPERTY_ACCESSORS.get(filter_property)
        if accessor is None:
            logger.warning("Unknown filter property %r for %s lookup", filter_property, entity)

        target = lookup.target(query)
        times: list[int] = []
        values: list[Any] = []
        for item in items:
            if accessor is None or lookup.name_of(item) != target:
                continue
            try:
                instant, _ = self.normalizer.parse(item.datetime)
            except DatetimeParseError:
                continue
            times.append(to_epoch_ms(instant))
            values.append(accessor(item))
            if not lookup.multi:
                break

        frame_name = f"property_{query.ref_id}_{entity}_{filter_property}"
        if not values:
            return [FrameSchema(name=f"{frame_name}_empty")]

        column, column_type = typed_values(values)
        frame = FrameSchema(
            name=frame_name,
            fields=[time_field(times), value_field(column, column_type, f"{entity} - ({filter_property})")],
        )
        return [frame]


def metric_display_name(query: QueryModel, channel: str) -> str:
    """Channel name, prefixed by group, then device, then sensor when requested."""
    display = channel
    if query.include_group_name and query.group:
        display = f"{query.group} - {display}"
    if query.include_device_name and query.device:
        display = f"{query.device} - {display}"
    if query.include_sensor_name and query.sensor:
        display = f"{query.sensor} - {display}"
    return display
