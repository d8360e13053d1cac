from .frame_schemas import FrameFieldSchema, FrameSchema
from .prtg_schemas import (
    PrtgDeviceListSchema,
    PrtgGroupListSchema,
    PrtgHistoricalDataSchema,
    PrtgSensorListSchema,
    PrtgStatusSchema,
    PrtgTableItemSchema,
)
from .query_schemas import QueryModel, QueryResultSchema, TimeRangeSchema

__all__ = [
    "FrameFieldSchema",
    "FrameSchema",
    "PrtgDeviceListSchema",
    "PrtgGroupListSchema",
    "PrtgHistoricalDataSchema",
    "PrtgSensorListSchema",
    "PrtgStatusSchema",
    "PrtgTableItemSchema",
    "QueryModel",
    "QueryResultSchema",
    "TimeRangeSchema",
]
