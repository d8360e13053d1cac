from prometheus_client import CollectorRegistry

from prtg_connector.services.observer import StatsObserver


def test_counters_land_in_instance_registry():
    registry = CollectorRegistry()
    observer = StatsObserver(registry)

    observer.observe_api_request("table.json", 0.25, "ok")
    observer.observe_api_request("table.json", 0.5, "ok")
    observer.observe_api_request("status.json", 1.0, "denied")
    observer.record_cache(True, "upstream")
    observer.record_cache(False, "upstream")
    observer.record_cache(False, "upstream")
    observer.record_error("resource_call")

    assert registry.get_sample_value(
        "prtg_connector_api_requests_total", labels={"endpoint": "table.json", "outcome": "ok"}
    ) == 2.0
    assert registry.get_sample_value(
        "prtg_connector_api_requests_total", labels={"endpoint": "status.json", "outcome": "denied"}
    ) == 1.0
    assert registry.get_sample_value(
        "prtg_connector_api_request_duration_seconds_sum", labels={"endpoint": "table.json"}
    ) == 0.75
    assert registry.get_sample_value("prtg_connector_cache_hits_total", labels={"scope": "upstream"}) == 1.0
    assert registry.get_sample_value("prtg_connector_cache_misses_total", labels={"scope": "upstream"}) == 2.0
    assert registry.get_sample_value("prtg_connector_errors_total", labels={"kind": "resource_call"}) == 1.0


def test_separate_observers_do_not_share_metrics():
    first = StatsObserver()
    second = StatsObserver()

    first.record_error("timeout")

    assert first.snapshot()["errors"] == {"timeout": 1}
    assert second.snapshot()["errors"] == {}


def test_snapshot_groups_registry_values():
    observer = StatsObserver()

    observer.observe_query_duration("metrics", 0.5)
    observer.observe_query_duration("metrics", 0.25)
    observer.observe_api_request("historicdata.json", 0.1, "ok")
    observer.record_cache(True, "query")

    snapshot = observer.snapshot()

    assert snapshot["queries"] == {"metrics": {"count": 2, "total_seconds": 0.75}}
    assert snapshot["api_requests"] == {"historicdata.json": {"ok": 1}}
    assert snapshot["cache"] == {"query": {"hits": 1, "misses": 0}}
    assert snapshot["errors"] == {}


def test_exposition_is_prometheus_text():
    observer = StatsObserver()
    observer.observe_api_request("table.json", 0.3, "ok")

    text = observer.exposition().decode()

    assert "# TYPE prtg_connector_api_requests_total counter" in text
    assert 'prtg_connector_api_requests_total{endpoint="table.json",outcome="ok"} 1.0' in text
    assert 'prtg_connector_api_request_duration_seconds_bucket{endpoint="table.json",le="0.4"} 1.0' in text
