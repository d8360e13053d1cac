from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _number_to_str(value: Any) -> Any:
    """PRTG emits some identifiers as strings for one entity type and numbers for another."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, int):
        return str(value)
    return value


class PrtgTableItemSchema(BaseModel):
    """One row of a ``table.json`` listing (groups, devices or sensors)."""

    active: bool = False
    active_raw: int = 0
    channel: str = ""
    channel_raw: str = ""
    datetime: str = ""
    datetime_raw: float = 0.0
    device: str = ""
    device_raw: str = ""
    group: str = ""
    group_raw: str = ""
    message: str = ""
    message_raw: str = ""
    objid: int = 0
    objid_raw: int = 0
    priority: str = ""
    priority_raw: int = 0
    sensor: str = ""
    sensor_raw: str = ""
    status: str = ""
    status_raw: int = 0
    tags: str = ""
    tags_raw: str = ""

    model_config = ConfigDict(extra="allow")

    @field_validator("channel_raw", "channel", "device_raw", "group_raw", "sensor_raw", "priority", mode="before")
    @classmethod
    def _coerce_flexible_strings(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _number_to_str(value)


class PrtgGroupListSchema(BaseModel):
    prtg_version: str = Field(default="", alias="prtg-version")
    treesize: int = 0
    groups: list[PrtgTableItemSchema] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PrtgDeviceListSchema(BaseModel):
    prtg_version: str = Field(default="", alias="prtg-version")
    treesize: int = 0
    devices: list[PrtgTableItemSchema] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PrtgSensorListSchema(BaseModel):
    prtg_version: str = Field(default="", alias="prtg-version")
    treesize: int = 0
    sensors: list[PrtgTableItemSchema] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PrtgStatusSchema(BaseModel):
    """Subset of ``status.json`` used by the health check."""

    version: str = ""
    prtg_version: str = Field(default="", alias="prtgversion")
    total_sensors: int = Field(default=0, alias="totalsens")
    alarms: str = ""
    clock: str = ""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _lowercase_keys(cls, data: Any) -> Any:
        # status.json key casing differs between PRTG releases (Version vs version)
        if isinstance(data, dict):
            return {str(key).lower(): value for key, value in data.items()}
        return data

    @field_validator("total_sensors", mode="before")
    @classmethod
    def _coerce_total(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            return int(stripped) if stripped.isdigit() else 0
        return value

    @field_validator("version", "prtg_version", "alarms", "clock", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        return "" if value is None else _number_to_str(value)


class PrtgHistoricalRowSchema(BaseModel):
    """A ``histdata`` row: ``datetime`` plus one key per channel caption."""

    datetime: str = ""
    values: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "PrtgHistoricalRowSchema":
        values = dict(raw)
        stamp = values.pop("datetime", "")
        return cls(datetime=stamp if isinstance(stamp, str) else "", values=values)


class PrtgHistoricalDataSchema(BaseModel):
    prtg_version: str = Field(default="", alias="prtg-version")
    treesize: int = 0
    histdata: list[PrtgHistoricalRowSchema] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("histdata", mode="before")
    @classmethod
    def _split_rows(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [PrtgHistoricalRowSchema.from_raw(row) if isinstance(row, dict) else row for row in value]


class KeyValueSchema(BaseModel):
    key: str
    value: Any = None


class PrtgManualResponseSchema(BaseModel):
    """Result of an arbitrary API method call: the raw object and its flattened pairs."""

    raw: dict[str, Any] = Field(default_factory=dict)
    key_values: list[KeyValueSchema] = Field(default_factory=list, alias="keyValues")

    model_config = ConfigDict(populate_by_name=True)
