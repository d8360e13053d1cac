from datetime import UTC, datetime

from fastapi.testclient import TestClient

from conftest import TEST_HOST, TEST_TOKEN, FakePrtg, make_datasource
from prtg_connector.dependencies.prtg_datasource import Settings
from prtg_connector.main import create_app

START_MS = int(datetime(2023, 1, 1, 9, 0, tzinfo=UTC).timestamp() * 1000)
END_MS = int(datetime(2023, 1, 1, 11, 0, tzinfo=UTC).timestamp() * 1000)


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "PRTG Connector"}


def test_query_endpoint_returns_results_by_ref_id(client):
    payload = {
        "queries": [
            {
                "refId": "A",
                "queryType": "metrics",
                "sensorId": 3001,
                "channelArray": ["Ping Time"],
                "timeRange": {"from": START_MS, "to": END_MS},
            },
            {"refId": "B", "queryType": "manual"},
        ]
    }

    response = client.post("/api/query", json=payload)

    assert response.status_code == 200
    results = response.json()["results"]
    frame = results["A"]["frames"][0]
    assert frame["name"] == "metrics_A_Ping Time"
    assert frame["fields"][1]["values"] == [12.5, 13.0]
    assert results["A"]["error"] is None
    assert results["B"]["status"] == 400


def test_resources_listing(client, fake_prtg):
    response = client.get("/api/resources/groups")

    assert response.status_code == 200
    body = response.json()
    assert body["prtg-version"] == "23.1.82.2175"
    assert [group["group"] for group in body["groups"]] == ["Servers", "Servers", "Network"]

    response = client.get("/api/resources/sensors/web-01")
    assert response.status_code == 200
    assert response.json()["sensors"][0]["channel_raw"] == "7"
    assert fake_prtg.requests[-1].url.params["filter_device"] == "web-01"


def test_resources_channels(client):
    response = client.get("/api/resources/channels/3001")

    assert response.status_code == 200
    assert response.json()["values"][0]["Ping Time"] == 13.0


def test_resources_errors(client, fake_prtg):
    assert client.get("/api/resources/devices").status_code == 400
    assert client.get("/api/resources/devices").json() == {"error": "group parameter is required"}
    assert client.get("/api/resources/maps").status_code == 404

    fake_prtg.fail_with = 500
    response = client.get("/api/resources/groups")
    assert response.status_code == 500
    assert "unexpected status code: 500" in response.json()["error"]


def test_health_ok(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "OK",
        "message": "Data source is working. PRTG Version: 23.1.82.2175",
        "details": {"version": "23.1.82.2175", "totalSensors": 42},
    }


def test_health_reports_upstream_error(client, fake_prtg):
    fake_prtg.fail_with = 403

    body = client.get("/api/health").json()

    assert body["status"] == "ERROR"
    assert body["message"].startswith("PRTG API error: access denied")


def test_health_requires_api_key():
    fake = FakePrtg()
    settings = Settings(prtg_host="prtg.example.test", prtg_timezone="UTC")
    client = TestClient(create_app(settings=settings, datasource=make_datasource(fake, api_key="")))

    body = client.get("/api/health").json()

    assert body["status"] == "ERROR"
    assert body["message"] == "API key is required but not configured"
    assert fake.requests == []


def test_health_without_version(client, fake_prtg):
    fake_prtg.status = {"TotalSens": 1}

    body = client.get("/api/health").json()

    assert body == {"status": "ERROR", "message": "Invalid response from PRTG server", "details": None}


def test_stream_subscribe_and_publish(client):
    data = {"panelId": "1", "refId": "A", "sensorId": "3001", "channel": "Ping Time"}

    response = client.post("/api/stream/subscribe", json={"path": "prtg-stream/1/A", "data": data})
    assert response.json()["status"] == "OK"

    response = client.post("/api/stream/subscribe", json={"path": "elsewhere", "data": data})
    assert response.json()["status"] == "NOT_FOUND"

    response = client.post("/api/stream/publish", json={"path": "prtg-stream/1/A", "data": {}})
    assert response.status_code == 403
    assert response.json() == {"status": "PERMISSION_DENIED", "message": "this datasource is read-only"}


def test_stream_socket_rejects_unknown_path(client):
    with client.websocket_connect("/api/stream/ws") as websocket:
        websocket.send_json({"path": "elsewhere", "data": {}})
        assert websocket.receive_json() == {"status": "NOT_FOUND"}


def test_stream_socket_pushes_frames(client):
    data = {
        "panelId": "1",
        "refId": "A",
        "sensorId": "3001",
        "channel": "Ping Time",
        "from": START_MS,
        "to": END_MS,
    }
    with client.websocket_connect("/api/stream/ws") as websocket:
        websocket.send_json({"path": "prtg-stream/1/A", "data": data})
        assert websocket.receive_json() == {"status": "OK"}

        frame = websocket.receive_json()["frame"]
        assert frame["name"] == "stream_3001_Ping Time"
        assert frame["fields"][1]["values"] == [12.5, 13.0]


def test_stats_and_cache_clear(client):
    client.get("/api/resources/groups")

    stats = client.get("/api/prtg/stats").json()
    assert stats["response_cache_entries"] == 1
    assert stats["api_requests"]["table.json"]["ok"] == 1

    response = client.post("/api/prtg/cache/clear")
    assert response.json()["status"] == "success"
    assert client.get("/api/prtg/stats").json()["response_cache_entries"] == 0


def test_metrics_endpoint_exposes_registry(client):
    client.get("/api/resources/groups")

    response = client.get("/api/prtg/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'prtg_connector_api_requests_total{endpoint="table.json",outcome="ok"} 1.0' in response.text


def test_two_sockets_on_one_stream_both_receive_frames(datasource):
    settings = Settings(prtg_host=TEST_HOST, prtg_api_token=TEST_TOKEN, prtg_timezone="UTC")
    data = {
        "panelId": "1",
        "refId": "A",
        "sensorId": "3001",
        "channel": "Ping Time",
        "from": START_MS,
        "to": END_MS,
    }
    message = {"path": "prtg-stream/1/A", "data": data}

    with TestClient(create_app(settings=settings, datasource=datasource)) as client:
        with client.websocket_connect("/api/stream/ws") as first:
            first.send_json(message)
            assert first.receive_json() == {"status": "OK"}
            assert first.receive_json()["frame"]["name"] == "stream_3001_Ping Time"

            with client.websocket_connect("/api/stream/ws") as second:
                second.send_json(message)
                assert second.receive_json() == {"status": "OK"}
                frame = second.receive_json()["frame"]
                assert frame["name"] == "stream_3001_Ping Time"
                assert frame["fields"][1]["values"] == [12.5, 13.0]

                assert first.receive_json()["frame"]["name"] == "stream_3001_Ping Time"
                assert datasource.stream_manager.active_count == 1
