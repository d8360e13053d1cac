import asyncio
import logging
from datetime import UTC, datetime, timedelta

import pytest

from prtg_connector.schemas.frame_schemas import FrameSchema
from prtg_connector.services.stream_manager import (
    ChannelBuffer,
    StreamManager,
    StreamQuotaError,
    StreamRequestError,
    SubscribeStatus,
    bounded_interval,
    suppression_window,
)

START = datetime(2023, 1, 1, 9, 0, tzinfo=UTC)
END = datetime(2023, 1, 1, 11, 0, tzinfo=UTC)
NOW = datetime(2023, 1, 1, 12, 0, tzinfo=UTC)


def _stream_data(channel: str = "Ping Time", **extra) -> dict:
    return {
        "panelId": "7",
        "refId": "A",
        "sensorId": "3001",
        "channelArray": [channel],
        "from": int(START.timestamp() * 1000),
        "to": int(END.timestamp() * 1000),
        **extra,
    }


@pytest.fixture
def manager(datasource, clock) -> StreamManager:
    return StreamManager(datasource.assembler, clock=clock, now=lambda: NOW, jitter=lambda: 0.0)


class FrameSink:
    def __init__(self):
        self.frames: list[FrameSchema] = []

    async def __call__(self, frame: FrameSchema) -> None:
        self.frames.append(frame)

    async def wait_for(self, count: int) -> None:
        for _ in range(200):
            if len(self.frames) >= count:
                return
            await asyncio.sleep(0.01)
        raise AssertionError(f"expected {count} frames, got {len(self.frames)}")


def test_interval_bounds():
    assert bounded_interval(0) == 5.0
    assert bounded_interval(200) == 1.0
    assert bounded_interval(2500) == 2.5
    assert bounded_interval(600_000) == 60.0
    assert suppression_window(0) == 5.0
    assert suppression_window(1000) == 1.0
    assert suppression_window(10_000) == 5.0


def test_channel_buffer_only_appends_newer_points():
    buffer = ChannelBuffer(capacity=3)

    assert buffer.append([1, 2], [1.0, 2.0]) == 2
    assert buffer.append([2, 3, 4], [2.0, 3.0, 4.0]) == 2

    assert list(buffer.times) == [2, 3, 4]
    assert list(buffer.values) == [2.0, 3.0, 4.0]
    assert buffer.last_value == 4.0


def test_subscribe_checks_path_and_fields(manager):
    assert manager.subscribe("prtg-stream/7/A", _stream_data()) is SubscribeStatus.OK
    assert manager.subscribe("other/7/A", _stream_data()) is SubscribeStatus.NOT_FOUND
    assert manager.subscribe("prtg-stream/7/A", {"panelId": "7", "channel": "Ping Time"}) is SubscribeStatus.PERMISSION_DENIED
    assert manager.subscribe("prtg-stream/7/A", {"panelId": "7", "sensorId": "3001"}) is SubscribeStatus.PERMISSION_DENIED


def test_publish_is_always_denied(manager):
    assert manager.publish("prtg-stream/7/A", {"value": 1}) is SubscribeStatus.PERMISSION_DENIED


def test_panel_quota(manager):
    for index in range(5):
        manager._register(manager.build_subscription(_stream_data(channel=f"C{index}")))

    assert manager.streams_for_panel("7") == [f"7_A_3001_C{index}" for index in range(5)]
    assert manager.subscribe("prtg-stream/7/A", _stream_data(channel="C5")) is SubscribeStatus.PERMISSION_DENIED
    assert manager.subscribe("prtg-stream/8/A", _stream_data(channel="C5", panelId="8")) is SubscribeStatus.OK
    with pytest.raises(StreamQuotaError):
        manager._register(manager.build_subscription(_stream_data(channel="C5")))


def test_build_subscription_requires_sensor(manager):
    with pytest.raises(StreamRequestError, match="sensorId"):
        manager.build_subscription({"channel": "Ping Time"})


def test_default_window_is_last_thirty_minutes(manager):
    data = _stream_data()
    data.pop("from")
    data.pop("to")

    stream = manager.build_subscription(data)

    assert stream.end == NOW
    assert stream.end - stream.start == timedelta(minutes=30)


@pytest.mark.asyncio
async def test_poll_sends_one_frame_per_channel(manager):
    data = _stream_data()
    data["channelArray"] = ["Ping Time", "Packet Loss"]
    stream = manager.build_subscription(data)
    sink = FrameSink()
    stream.subscribers.append(sink)

    assert await manager.poll(stream) is True

    assert [frame.name for frame in sink.frames] == ["stream_3001_Ping Time", "stream_3001_Packet Loss"]
    ping = sink.frames[0]
    assert ping.field("Value").values == [12.5, 13.0]
    assert ping.meta["custom"]["streaming"] is True
    assert ping.meta["custom"]["streaming_rate"] == 5000
    assert ping.meta["custom"]["streamStatus"]["lastValue"] == 13.0


@pytest.mark.asyncio
async def test_poll_is_suppressed_inside_window(manager, clock):
    stream = manager.build_subscription(_stream_data())
    sink = FrameSink()
    stream.subscribers.append(sink)

    assert await manager.poll(stream) is True
    assert await manager.poll(stream) is False
    clock.advance(5)
    assert await manager.poll(stream) is True

    assert len(sink.frames) == 2
    assert len(stream.buffers["Ping Time"]) == 2


@pytest.mark.asyncio
async def test_sliding_mode_recenters_window(manager):
    stream = manager.build_subscription(_stream_data(updateMode="sliding"))

    stream.subscribers.append(FrameSink())

    await manager.poll(stream)

    assert stream.end == NOW
    assert stream.end - stream.start == END - START


@pytest.mark.asyncio
async def test_poll_errors_are_throttled_in_logs(manager, clock, fake_prtg, caplog):
    fake_prtg.fail_with = 500
    stream = manager.build_subscription(_stream_data())

    with caplog.at_level(logging.ERROR, logger="prtg_connector.services.stream_manager"):
        for _ in range(12):
            assert await manager.poll(stream) is False
            clock.advance(10)

    failures = [record for record in caplog.records if record.getMessage().startswith("Stream update failed")]
    assert len(failures) == 4
    assert stream.error_count == 12


@pytest.mark.asyncio
async def test_poll_drops_subscriber_whose_send_fails(manager):
    async def closed_socket(frame: FrameSchema) -> None:
        raise RuntimeError("socket closed")

    stream = manager.build_subscription(_stream_data())
    sink = FrameSink()
    stream.subscribers.extend([closed_socket, sink])

    assert await manager.poll(stream) is True

    assert len(sink.frames) == 1
    assert stream.subscribers == [sink]


@pytest.mark.asyncio
async def test_second_run_shares_the_live_stream(manager):
    first, second = FrameSink(), FrameSink()
    first_task = asyncio.create_task(manager.run(_stream_data(), first))
    await first.wait_for(1)

    second_task = asyncio.create_task(manager.run(_stream_data(), second))
    await second.wait_for(1)
    await first.wait_for(2)

    stream = manager.get("7_A_3001_Ping Time")
    assert manager.active_count == 1
    assert stream.subscribers == [first, second]
    assert not second_task.done()
    assert second.frames[0].field("Value").values == [12.5, 13.0]

    second_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await second_task
    assert manager.active_count == 1
    assert stream.subscribers == [first]
    assert not stream.poller.done()

    first_task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first_task
    assert manager.active_count == 0
    assert manager.streams_for_panel("7") == []
    assert stream.poller.done()
    assert stream.active is False
