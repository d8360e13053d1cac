import copy
from collections import Counter
from typing import Any

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from prtg_connector.dependencies.prtg_datasource import Settings
from prtg_connector.main import create_app
from prtg_connector.schemas.settings_schemas import PluginSettings
from prtg_connector.services.datasource import PrtgDatasource

TEST_HOST = "prtg.example.test"
TEST_TOKEN = "secret-token"

STATUS = {"Version": "23.1.82.2175", "prtgversion": "23.1.82.2175", "TotalSens": 42, "Alarms": "1", "Clock": "01.01.2023 10:00:00"}

GROUPS = {
    "prtg-version": "23.1.82.2175",
    "treesize": 3,
    "groups": [
        {
            "objid": 1,
            "group": "Servers",
            "datetime": "01.01.2023 10:00:00",
            "active": True,
            "active_raw": -1,
            "message": '<div class="status">OK</div>',
            "message_raw": "OK",
            "priority": "3",
            "priority_raw": 3,
            "status": "Up",
            "status_raw": 3,
            "tags": "prod",
            "tags_raw": "prod",
        },
        {
            "objid": 2,
            "group": "Servers",
            "datetime": "01.01.2023 11:00:00",
            "active": True,
            "active_raw": -1,
            "message": '<div class="status">Warning</div><div class="moreicon"></div>',
            "message_raw": "Warning",
            "priority": "4",
            "priority_raw": 4,
            "status": "Warning",
            "status_raw": 4,
            "tags": "prod",
            "tags_raw": "prod",
        },
        {
            "objid": 3,
            "group": "Network",
            "datetime": "01.01.2023 10:00:00",
            "status": "Up",
            "status_raw": 3,
        },
    ],
}

DEVICES = {
    "prtg-version": "23.1.82.2175",
    "treesize": 1,
    "devices": [
        {
            "objid": 2001,
            "device": "web-01",
            "group": "Servers",
            "datetime": "01.01.2023 10:00:00",
            "status": "Up",
            "status_raw": 3,
            "message": '<div class="status">OK</div>',
            "message_raw": "OK",
        }
    ],
}

SENSORS = {
    "prtg-version": "23.1.82.2175",
    "treesize": 1,
    "sensors": [
        {
            "objid": 3001,
            "sensor": "Ping",
            "device": "web-01",
            "group": "Servers",
            "channel": 7,
            "channel_raw": 7,
            "datetime": "01.01.2023 10:00:00",
            "status": "Up",
            "status_raw": 3,
            "priority": 3,
            "priority_raw": 3,
        }
    ],
}

HISTORY = {
    "prtg-version": "23.1.82.2175",
    "treesize": 3,
    "histdata": [
        {"datetime": "01.01.2023 10:00:00", "Ping Time": 12.5, "Packet Loss": "0"},
        {"datetime": "01.01.2023 10:01:00", "Ping Time": "13.0", "Packet Loss": 0},
        {"datetime": "01.01.2023 10:02:00", "Ping Time": "n/a"},
    ],
}

CHANNELS = {"prtg-version": "23.1.82.2175", "treesize": 1, "values": [{"datetime": "01.01.2023 10:02:00", "Ping Time": 13.0}]}


class FakePrtg:
    """In-memory PRTG API served through ``httpx.MockTransport``."""

    def __init__(self):
        self.status = copy.deepcopy(STATUS)
        self.groups = copy.deepcopy(GROUPS)
        self.devices = copy.deepcopy(DEVICES)
        self.sensors = copy.deepcopy(SENSORS)
        self.history = copy.deepcopy(HISTORY)
        self.channels = copy.deepcopy(CHANNELS)
        self.manual: dict[str, Any] = {"a": "x", "b": {"c": "y"}, "d": ["p", {"e": "q"}]}
        self.fail_with: int | None = None
        self.calls: Counter[str] = Counter()
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.removeprefix("/api/")
        self.calls[method] += 1
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, content=b"failure")

        params = request.url.params
        if method == "status.json":
            body: Any = self.status
        elif method == "table.json":
            body = {"groups": self.groups, "devices": self.devices, "sensors": self.sensors}[params["content"]]
        elif method == "historicdata.json":
            body = self.channels if params.get("content") == "values" else self.history
        else:
            body = self.manual
        return httpx.Response(200, content=orjson.dumps(body))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_datasource(
    fake: FakePrtg, clock: FakeClock | None = None, *, api_key: str = TEST_TOKEN, timezone: str = "UTC"
) -> PrtgDatasource:
    settings = PluginSettings.from_instance_settings(
        {"path": TEST_HOST, "cacheTime": 30, "timeZone": timezone},
        {"apiKey": api_key},
    )
    return PrtgDatasource(settings, transport=fake.transport, clock=clock or FakeClock())


@pytest.fixture
def fake_prtg() -> FakePrtg:
    return FakePrtg()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datasource(fake_prtg, clock) -> PrtgDatasource:
    return make_datasource(fake_prtg, clock)


@pytest.fixture
def client(datasource) -> TestClient:
    settings = Settings(prtg_host=TEST_HOST, prtg_api_token=TEST_TOKEN, prtg_timezone="UTC")
    app = create_app(settings=settings, datasource=datasource)
    return TestClient(app)
