"""
Live-polling stream subscriptions.

A subscription is keyed by ``{panelId}_{refId}_{sensorId}_{channels}`` and
owns one background poll task. Every ``run`` for a key attaches its send
callback and waits until cancelled; a ``run`` that joins a live key also
refreshes the window and wakes the poller. Each poll fetches the sensor
history once and pushes one frame per channel, with the full buffered
series, to every attached subscriber. The poller stops and the key is
released when the last subscriber detaches.
"""

import asyncio
import contextlib
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from prtg_connector.schemas.frame_schemas import FrameSchema, time_field, value_field
from prtg_connector.schemas.query_schemas import QueryModel
from prtg_connector.services.frame_assembler import FrameAssembler, QueryError, metric_display_name, to_epoch_ms
from prtg_connector.services.observer import LoggingObserver, QueryObserver

logger = logging.getLogger(__name__)

STREAM_PATH_PREFIX = "prtg-stream/"
MAX_STREAMS_PER_PANEL = 5
MIN_INTERVAL_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 60.0
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_SUPPRESSION_SECONDS = 5.0
MIN_SUPPRESSION_SECONDS = 1.0
MAX_JITTER_SECONDS = 0.25
BUFFER_SIZE = 500
DEFAULT_WINDOW = timedelta(minutes=30)

SendFrame = Callable[[FrameSchema], Awaitable[None]]


class SubscribeStatus(StrEnum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class StreamRequestError(ValueError):
    """The stream request body is unusable."""


class StreamQuotaError(Exception):
    def __init__(self, panel_id: str, limit: int):
        self.panel_id = panel_id
        self.limit = limit
        super().__init__(f"maximum of {limit} streams reached for panel {panel_id!r}")


def bounded_interval(requested_ms: int) -> float:
    if requested_ms <= 0:
        return DEFAULT_INTERVAL_SECONDS
    return min(max(requested_ms / 1000, MIN_INTERVAL_SECONDS), MAX_INTERVAL_SECONDS)


def suppression_window(requested_ms: int) -> float:
    if requested_ms <= 0:
        return DEFAULT_SUPPRESSION_SECONDS
    return max(requested_ms / 2000, MIN_SUPPRESSION_SECONDS)


def stream_id_for(query: QueryModel, channels: list[str]) -> str:
    return f"{query.panel_id}_{query.ref_id}_{query.sensor_id}_{'_'.join(channels)}"


@dataclass(slots=True)
class ChannelBuffer:
    """Bounded time/value series for one channel."""

    capacity: int = BUFFER_SIZE
    times: deque[int] = field(init=False)
    values: deque[float] = field(init=False)
    last_value: float | None = None

    def __post_init__(self) -> None:
        self.times = deque(maxlen=self.capacity)
        self.values = deque(maxlen=self.capacity)

    def append(self, times: list[int], values: list[float]) -> int:
        """Append points newer than the last buffered one; the oldest fall off past capacity."""
        newest = self.times[-1] if self.times else None
        added = 0
        for stamp, value in zip(times, values, strict=True):
            if newest is not None and stamp <= newest:
                continue
            self.times.append(stamp)
            self.values.append(value)
            newest = stamp
            added += 1
        if values:
            self.last_value = values[-1]
        return added

    def replace(self, times: list[int], values: list[float]) -> None:
        self.times.clear()
        self.values.clear()
        self.times.extend(times)
        self.values.extend(values)
        if values:
            self.last_value = values[-1]

    def __len__(self) -> int:
        return len(self.times)


@dataclass(slots=True)
class StreamSubscription:
    stream_id: str
    panel_id: str
    query: QueryModel
    channels: list[str]
    interval: float
    suppression: float
    start: datetime
    end: datetime
    update_mode: str = "append"
    buffers: dict[str, ChannelBuffer] = field(default_factory=dict)
    last_update: float | None = None
    error_count: int = 0
    active: bool = True
    nudge: asyncio.Event = field(default_factory=asyncio.Event)
    subscribers: list[SendFrame] = field(default_factory=list)
    poller: asyncio.Task | None = None

    @property
    def sensor_id(self) -> str:
        return self.query.sensor_id


class StreamManager:
    """Registry and poll loops for live stream subscriptions."""

    def __init__(
        self,
        assembler: FrameAssembler,
        *,
        observer: QueryObserver | None = None,
        max_streams_per_panel: int = MAX_STREAMS_PER_PANEL,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
        jitter: Callable[[], float] = lambda: random.uniform(0, MAX_JITTER_SECONDS),
    ):
        self.assembler = assembler
        self.observer: QueryObserver = observer if observer is not None else LoggingObserver()
        self.max_streams_per_panel = max_streams_per_panel
        self._clock = clock
        self._now = now
        self._jitter = jitter
        self._streams: dict[str, StreamSubscription] = {}
        self._panels: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------

    def get(self, stream_id: str) -> StreamSubscription | None:
        with self._lock:
            return self._streams.get(stream_id)

    def streams_for_panel(self, panel_id: str) -> list[str]:
        with self._lock:
            return sorted(self._panels.get(panel_id, ()))

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._streams)

    def _register(self, stream: StreamSubscription) -> StreamSubscription | None:
        """Add ``stream`` unless its key is live; returns the live one in that case."""
        with self._lock:
            existing = self._streams.get(stream.stream_id)
            if existing is not None:
                return existing
            panel_streams = self._panels.setdefault(stream.panel_id, set())
            if len(panel_streams) >= self.max_streams_per_panel:
                if not panel_streams:
                    self._panels.pop(stream.panel_id, None)
                raise StreamQuotaError(stream.panel_id, self.max_streams_per_panel)
            self._streams[stream.stream_id] = stream
            panel_streams.add(stream.stream_id)
            return None

    def _unregister(self, stream: StreamSubscription) -> None:
        with self._lock:
            if self._streams.get(stream.stream_id) is stream:
                del self._streams[stream.stream_id]
            panel_streams = self._panels.get(stream.panel_id)
            if panel_streams is not None:
                panel_streams.discard(stream.stream_id)
                if not panel_streams:
                    del self._panels[stream.panel_id]
        stream.active = False
        stream.buffers.clear()

    # ------------------------------------------------------------------
    # subscribe / publish
    # ------------------------------------------------------------------

    def subscribe(self, path: str, data: Mapping[str, Any]) -> SubscribeStatus:
        if not path.startswith(STREAM_PATH_PREFIX):
            return SubscribeStatus.NOT_FOUND
        try:
            query = QueryModel.model_validate(data)
        except ValidationError as exc:
            logger.error("Invalid subscription data: path=%s errors=%d", path, exc.error_count())
            return SubscribeStatus.PERMISSION_DENIED

        if not query.sensor_id or not query.channels:
            logger.error("Missing required stream fields: sensor_id=%r channels=%s", query.sensor_id, query.channels)
            return SubscribeStatus.PERMISSION_DENIED

        panel_streams = self.streams_for_panel(query.panel_id)
        if len(panel_streams) >= self.max_streams_per_panel:
            logger.warning("Maximum streams reached for panel %s", query.panel_id)
            self.observer.record_error("stream_quota")
            return SubscribeStatus.PERMISSION_DENIED

        logger.debug("Stream subscription accepted: path=%s panel=%s", path, query.panel_id)
        return SubscribeStatus.OK

    def publish(self, path: str, data: Mapping[str, Any] | None = None) -> SubscribeStatus:
        logger.debug("Rejecting publish to read-only stream %s", path)
        return SubscribeStatus.PERMISSION_DENIED

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def _window_for(self, query: QueryModel) -> tuple[datetime, datetime]:
        if query.from_ms > 0 and query.to_ms > 0:
            return (
                datetime.fromtimestamp(query.from_ms / 1000, tz=UTC),
                datetime.fromtimestamp(query.to_ms / 1000, tz=UTC),
            )
        if query.time_range is not None and query.time_range.from_ms > 0 and query.time_range.to_ms > 0:
            return query.time_range.start, query.time_range.end
        end = self._now()
        return end - DEFAULT_WINDOW, end

    def build_subscription(self, data: Mapping[str, Any]) -> StreamSubscription:
        try:
            query = QueryModel.model_validate(data)
        except ValidationError as exc:
            raise StreamRequestError(f"failed to parse stream data: {exc.error_count()} error(s)") from exc
        if not query.sensor_id:
            raise StreamRequestError("missing required field: sensorId")
        channels = query.channels
        if not channels:
            raise StreamRequestError("missing required field: channel or channelArray")

        start, end = self._window_for(query)
        mode = "sliding" if query.update_mode == "sliding" else "append"
        return StreamSubscription(
            stream_id=stream_id_for(query, channels),
            panel_id=query.panel_id,
            query=query,
            channels=channels,
            interval=bounded_interval(query.stream_interval),
            suppression=suppression_window(query.stream_interval),
            start=start,
            end=end,
            update_mode=mode,
            buffers={channel: ChannelBuffer() for channel in channels},
        )

    async def run(self, data: Mapping[str, Any], send: SendFrame) -> None:
        """Receive frames through ``send`` until cancelled.

        The first caller for a key starts its poller. Later callers join the
        live stream, refresh its window and wake the poller so they get frames
        right away.
        """
        stream = self.build_subscription(data)
        existing = self._register(stream)
        if existing is not None:
            existing.start = stream.start
            existing.end = stream.end
            existing.suppression = stream.suppression
            existing.active = True
            existing.last_update = None
            stream = existing
            logger.info("Stream refreshed: stream_id=%s subscribers=%d", stream.stream_id, len(stream.subscribers) + 1)
        else:
            logger.info(
                "Stream starting: stream_id=%s interval_ms=%d mode=%s",
                stream.stream_id,
                stream.interval * 1000,
                stream.update_mode,
            )
            stream.poller = asyncio.create_task(self._loop(stream), name=f"stream-{stream.stream_id}")

        stream.subscribers.append(send)
        stream.nudge.set()
        try:
            await asyncio.shield(stream.poller)
        finally:
            await self._detach(stream, send)

    async def _detach(self, stream: StreamSubscription, send: SendFrame) -> None:
        if send in stream.subscribers:
            stream.subscribers.remove(send)
        if stream.subscribers:
            logger.debug("Subscriber left: stream_id=%s remaining=%d", stream.stream_id, len(stream.subscribers))
            return

        self._unregister(stream)
        poller = stream.poller
        if poller is not None and not poller.done():
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller
        logger.info("Stream closed: stream_id=%s", stream.stream_id)

    async def _loop(self, stream: StreamSubscription) -> None:
        period = stream.interval + self._jitter()
        while True:
            try:
                await asyncio.wait_for(stream.nudge.wait(), timeout=period)
            except TimeoutError:
                pass
            stream.nudge.clear()
            await self.poll(stream)

    async def _fan_out(self, stream: StreamSubscription, frame: FrameSchema) -> None:
        for send in list(stream.subscribers):
            try:
                await send(frame)
            except Exception as exc:
                # a closed socket drops out; the others keep receiving
                logger.warning("Dropping stream subscriber: stream_id=%s error=%s", stream.stream_id, exc)
                if send in stream.subscribers:
                    stream.subscribers.remove(send)

    async def poll(self, stream: StreamSubscription) -> bool:
        """One tick: fetch, update buffers, send frames to every subscriber.

        Returns False when skipped or failed.
        """
        if stream.update_mode == "sliding":
            length = stream.end - stream.start
            stream.end = self._now()
            stream.start = stream.end - length

        if stream.last_update is not None and self._clock() - stream.last_update < stream.suppression:
            return False
        stream.last_update = self._clock()

        try:
            history = await asyncio.wait_for(
                self.assembler.fetch_history(stream.sensor_id, stream.start, stream.end),
                timeout=stream.interval / 2,
            )
        except (QueryError, TimeoutError) as exc:
            stream.error_count += 1
            self.observer.record_error("stream_poll")
            if stream.error_count <= 3 or stream.error_count % 10 == 0:
                logger.error(
                    "Stream update failed: stream_id=%s count=%d error=%s",
                    stream.stream_id,
                    stream.error_count,
                    exc if str(exc) else type(exc).__name__,
                )
            return False

        stream.error_count = 0
        for channel in stream.channels:
            times, values = self.assembler.channel_series(history, channel)
            buffer = stream.buffers.setdefault(channel, ChannelBuffer())
            if stream.update_mode == "append":
                buffer.append(times, values)
            else:
                buffer.replace(times[-buffer.capacity :], values[-buffer.capacity :])
            await self._fan_out(stream, self.stream_frame(stream, channel, buffer))
        return True

    def stream_frame(self, stream: StreamSubscription, channel: str, buffer: ChannelBuffer) -> FrameSchema:
        status = {
            "active": stream.active,
            "lastUpdate": to_epoch_ms(self._now()),
            "lastValue": buffer.last_value,
            "dataPoints": len(buffer),
            "streamId": stream.stream_id,
            "sensorId": stream.sensor_id,
            "channelName": channel,
            "isLive": True,
            "state": "streaming",
        }
        return FrameSchema(
            name=f"stream_{stream.sensor_id}_{channel}",
            fields=[
                time_field(list(buffer.times)),
                value_field(list(buffer.values), "number", metric_display_name(stream.query, channel)),
            ],
            meta={
                "type": "timeseries-multi",
                "custom": {
                    "from": to_epoch_ms(stream.start),
                    "to": to_epoch_ms(stream.end),
                    "channel": channel,
                    "updating": True,
                    "streaming": True,
                    "live": True,
                    "streaming_rate": int(stream.interval * 1000),
                    "isActive": stream.active,
                    "stable": True,
                    "timezone": "UTC",
                    "state": "streaming",
                    "streamStatus": status,
                },
            },
        )
