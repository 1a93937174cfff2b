from fastapi.testclient import TestClient
from prometheus_client.parser import text_string_to_metric_families

from conftest import FakeDatabase


def test_metrics_capture_request_and_histogram(client):
    # Hit liveness to generate a request metric
    r = client.get("/alive")
    assert r.status_code == 200

    m = client.get("/metrics")
    assert m.status_code == 200
    assert m.headers["content-type"] == "text/plain; version=0.0.4; charset=utf-8"

    samples = {
        s.name: s.value
        for family in text_string_to_metric_families(m.text)
        for s in family.samples
        if not s.labels
    }
    # /metrics is recorded after its body was rendered, so only /alive is visible
    assert samples["gas_relayer_http_requests_total"] == 1
    assert samples["gas_relayer_http_request_duration_seconds_count"] == 1


def test_metrics_json_view(client):
    client.get("/alive")
    data = client.get("/metrics", params={"format": "json"}).json()

    counters = {c["name"]: c["value"] for c in data["counters"]}
    assert counters["gas_relayer_http_requests_total"] == 1
    assert any(h["name"] == "gas_relayer_http_request_duration_seconds" for h in data["histograms"])


def test_metrics_export_failure_is_500(client, registry, monkeypatch):
    from gas_relayer.obs.metrics import MetricsExportError

    def broken_export():
        raise MetricsExportError("encoding failed")

    monkeypatch.setattr(registry, "export", broken_export)

    r = client.get("/metrics")
    assert r.status_code == 500
    assert r.text == "Failed to export metrics"

    # process keeps serving
    assert client.get("/alive").status_code == 200


def test_alive_never_depends_on_database(client, fake_db):
    fake_db.fail = True
    r = client.get("/alive")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "alive"
    assert "timestamp" in body
    assert fake_db.pings == 0


def test_ready_when_database_answers(client):
    r = client.get("/ready")
    assert r.status_code == 200
    assert r.json()["status"] == "ready"
    assert "timestamp" in r.json()


def test_not_ready_when_database_fails(client, fake_db, capsys):
    fake_db.fail = True
    r = client.get("/ready")
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "not_ready"
    assert body["error"] == "Database connection failed"
    assert "timestamp" in body
    assert '"level":"ERROR"' in capsys.readouterr().out


def test_db_health_status_follows_ping(client, fake_db):
    ok = client.get("/db-health")
    assert ok.status_code == 200
    assert ok.content == b""

    fake_db.fail = True
    bad = client.get("/db-health")
    assert bad.status_code == 500
    assert bad.content == b""


def test_health_reports_components(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert set(body["components"]) == {"database", "metrics"}
    db = body["components"]["database"]
    assert db["details"]["active_connections"] == 2
    assert db["response_time_ms"] is not None
    assert body["uptime_seconds"] >= 0


def test_health_updates_connection_gauge(client, registry):
    client.get("/health")
    assert registry.db_connections_active.get() == 2


def test_health_is_503_when_database_down(client, fake_db):
    fake_db.fail = True
    r = client.get("/health")
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "unhealthy"
    assert body["components"]["database"]["status"] == "unhealthy"
    assert body["components"]["metrics"]["status"] == "healthy"


def test_health_degraded_is_still_200(settings, registry):
    from gas_relayer.state import ApplicationState
    from main import create_app

    slow_settings = settings.model_copy(update={"DB_SLOW_THRESHOLD_MS": 1.0})
    state = ApplicationState.create(slow_settings, FakeDatabase(delay=0.05), registry)
    client = TestClient(create_app(state))

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "degraded"
    assert r.json()["components"]["database"]["status"] == "degraded"


def test_health_probe_timeout_is_unhealthy(settings, registry):
    from gas_relayer.state import ApplicationState
    from main import create_app

    state = ApplicationState.create(settings, FakeDatabase(delay=2.0), registry)
    client = TestClient(create_app(state))

    r = client.get("/health")
    assert r.status_code == 503
    assert "timed out" in r.json()["components"]["database"]["message"]
