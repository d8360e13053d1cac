from typing import Any, Literal

from pydantic import BaseModel, Field

FieldType = Literal["time", "number", "string"]


class FrameFieldSchema(BaseModel):
    """One typed column of a frame. Time columns hold epoch milliseconds."""

    name: str
    type: FieldType
    values: list[Any] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str | None:
        return self.config.get("displayName")


class FrameSchema(BaseModel):
    name: str
    fields: list[FrameFieldSchema] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def length(self) -> int:
        return len(self.fields[0].values) if self.fields else 0

    def field(self, name: str) -> FrameFieldSchema | None:
        for field in self.fields:
            if field.name == name:
                return field
        return None


def time_field(values: list[int]) -> FrameFieldSchema:
    return FrameFieldSchema(name="Time", type="time", values=values)


def value_field(values: list[Any], field_type: FieldType, display_name: str) -> FrameFieldSchema:
    return FrameFieldSchema(name="Value", type=field_type, values=values, config={"displayName": display_name})
