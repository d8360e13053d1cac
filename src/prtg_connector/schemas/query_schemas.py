from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from prtg_connector.schemas.frame_schemas import FrameSchema


class TimeRangeSchema(BaseModel):
    """Query time window in epoch milliseconds."""

    from_ms: int = Field(alias="from")
    to_ms: int = Field(alias="to")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def start(self) -> datetime:
        return datetime.fromtimestamp(self.from_ms / 1000, tz=UTC)

    @property
    def end(self) -> datetime:
        return datetime.fromtimestamp(self.to_ms / 1000, tz=UTC)

    @property
    def duration_seconds(self) -> float:
        return (self.to_ms - self.from_ms) / 1000


class QueryModel(BaseModel):
    """Panel query body. Unknown keys are kept so they take part in the fingerprint."""

    ref_id: str = Field(default="A", alias="refId")
    query_type: str = Field(default="", alias="queryType")
    time_range: TimeRangeSchema | None = Field(default=None, alias="timeRange")

    sensor_id: str = Field(default="", alias="sensorId")
    device_id: str = Field(default="", alias="deviceId")
    group_id: str = Field(default="", alias="groupId")
    group: str = ""
    device: str = ""
    sensor: str = ""
    channel: str = ""
    channel_array: list[str] = Field(default_factory=list, alias="channelArray")

    property_name: str = Field(default="", alias="property")
    filter_property: str = Field(default="", alias="filterProperty")

    include_group_name: bool = Field(default=False, alias="includeGroupName")
    include_device_name: bool = Field(default=False, alias="includeDeviceName")
    include_sensor_name: bool = Field(default=False, alias="includeSensorName")

    manual_method: str = Field(default="", alias="manualMethod")
    manual_object_id: str = Field(default="", alias="manualObjectId")

    panel_id: str = Field(default="", alias="panelId")
    is_streaming: bool = Field(default=False, alias="isStreaming")
    stream_interval: int = Field(default=0, alias="streamInterval")
    update_mode: str = Field(default="", alias="updateMode")
    from_ms: int = Field(default=0, alias="from")
    to_ms: int = Field(default=0, alias="to")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator(
        "sensor_id", "device_id", "group_id", "panel_id", "manual_object_id", mode="before"
    )
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

    @field_validator("stream_interval", "from_ms", "to_ms", mode="before")
    @classmethod
    def _coerce_int(cls, value: Any) -> Any:
        if value is None or value == "":
            return 0
        return value

    @property
    def channels(self) -> list[str]:
        """Selected channels; the single ``channel`` field is the fallback."""
        if self.channel_array:
            return list(self.channel_array)
        if self.channel:
            return [self.channel]
        return []


class QueryRequestSchema(BaseModel):
    queries: list[dict[str, Any]] = Field(default_factory=list)


class QueryResultSchema(BaseModel):
    frames: list[FrameSchema] = Field(default_factory=list)
    error: str | None = None
    status: int = 200


class QueryResponseSchema(BaseModel):
    results: dict[str, QueryResultSchema] = Field(default_factory=dict)


class StreamRequestSchema(BaseModel):
    path: str
    data: dict[str, Any] = Field(default_factory=dict)


class StreamStatusSchema(BaseModel):
    status: str
    message: str | None = None


class HealthCheckSchema(BaseModel):
    status: str
    message: str
    details: dict[str, Any] | None = None
