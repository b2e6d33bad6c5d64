from fastapi.testclient import TestClient

from busy_gate.clock import MS_IN_HOUR
from busy_gate.server import create_app


def _client(gate) -> TestClient:
    return TestClient(create_app(gate))


def test_engage_contention_and_release_over_http(gate, clock, sink):
    client = _client(gate)

    r = client.post("/v1/engage/try", json={"subject": "w1", "requester": "A", "context": "gig-7"})
    assert r.status_code == 200
    body = r.json()
    assert body["acquired"] is True
    assert body["status"] == "held"
    assert body["holder"] == "A"
    assert body["propagation"] == "ok"

    r = client.post("/v1/engage/try", json={"subject": "w1", "requester": "B"})
    assert r.status_code == 409
    err = r.json()
    assert err["code"] == "BUSY_E_ALREADY_HELD"
    assert err["retryable"] is True
    assert err["details"]["holder"] == "A"
    assert err["details"]["context"] == "gig-7"

    r = client.post("/v1/engage/release", json={"subject": "w1", "requester": "B"})
    assert r.status_code == 403
    assert r.json()["code"] == "BUSY_E_NOT_OWNER"

    clock.advance_hours(2)
    r = client.post("/v1/engage/release", json={"subject": "w1", "requester": "A", "value": 80})
    assert r.status_code == 200
    released = r.json()
    assert released["status"] == "free"
    assert released["history"]["value"] == 80.0
    assert released["history"]["notes"] == "Released by A"

    r = client.get("/v1/engage/status/w1")
    assert r.json()["status"] == "free"
    assert r.json()["holder"] is None


def test_release_unknown_subject_is_404(gate):
    client = _client(gate)
    r = client.post("/v1/engage/release", json={"subject": "ghost", "requester": "A"})
    assert r.status_code == 404
    assert r.json()["code"] == "BUSY_E_NOT_FOUND"


def test_heartbeat_and_busy_list(gate, clock):
    client = _client(gate)
    client.post("/v1/engage/try", json={"subject": "w1", "requester": "A", "ttl_seconds": 30})

    r = client.post("/v1/engage/heartbeat", json={"subject": "w1", "requester": "A", "extend_seconds": 600})
    assert r.status_code == 200
    assert r.json()["expires_at"].startswith("2026-01-01T00:10:00")

    r = client.post("/v1/engage/heartbeat", json={"subject": "w1", "requester": "B", "extend_seconds": 600})
    assert r.status_code == 403

    busy = client.get("/v1/engage/busy").json()["busy"]
    assert [b["subject"] for b in busy] == ["w1"]


def test_quota_flow_over_http(gate, clock):
    client = _client(gate)

    r = client.post("/v1/quota/allocate", json={"subject": "w1", "requester": "h1", "hours": 5})
    assert r.status_code == 200
    assert r.json()["granted_ms"] == 5 * MS_IN_HOUR

    r = client.post("/v1/quota/allocate", json={"subject": "w1", "requester": "h2", "requested_ms": 5 * MS_IN_HOUR})
    assert r.json()["granted_ms"] == 3 * MS_IN_HOUR
    assert r.json()["remaining_ms"] == 0

    r = client.post("/v1/quota/allocate", json={"subject": "w1", "requester": "h3", "hours": 1})
    assert r.status_code == 409
    assert r.json()["code"] == "BUSY_E_WINDOW_DISABLED"

    status = client.get("/v1/quota/status/w1").json()
    assert status["enabled"] is False
    assert status["busy_hours_used"] == 8.0

    r = client.post("/v1/quota/enable", json={"subject": "w1"})
    assert r.status_code == 409
    assert r.json()["code"] == "BUSY_E_TOO_EARLY"
    assert r.json()["details"]["wait_ms"] == 15 * MS_IN_HOUR

    allocations = client.get("/v1/quota/allocations/w1").json()["allocations"]
    assert [a["granted_by"] for a in allocations] == ["h2", "h1"]


def test_allocate_requires_a_duration(gate):
    client = _client(gate)
    r = client.post("/v1/quota/allocate", json={"subject": "w1", "requester": "h1"})
    assert r.status_code == 400
    assert r.json()["code"] == "BUSY_E_BAD_REQUEST"


def test_release_allocation_over_http(gate, clock):
    client = _client(gate)
    grant = client.post("/v1/quota/allocate", json={"subject": "w1", "requester": "h1", "hours": 4}).json()
    clock.advance_hours(1)
    r = client.post("/v1/quota/release", json={"allocation_id": grant["record"]["allocation_id"]})
    assert r.status_code == 200
    assert r.json()["released"] is True
    assert r.json()["duration_ms"] == MS_IN_HOUR

    r = client.post("/v1/quota/release", json={"allocation_id": "alloc_nope"})
    assert r.status_code == 404


def test_history_endpoint_filters_by_role(gate):
    client = _client(gate)
    client.post("/v1/engage/try", json={"subject": "w1", "requester": "h1"})
    client.post("/v1/engage/release", json={"subject": "w1", "requester": "h1"})

    r = client.get("/v1/history", params={"party": "h1", "role": "hirer"})
    assert r.status_code == 200
    assert [h["subject"] for h in r.json()["history"]] == ["w1"]

    r = client.get("/v1/history", params={"party": "h1", "role": "worker"})
    assert r.json()["history"] == []

    r = client.get("/v1/history", params={"party": "h1", "role": "boss"})
    assert r.status_code == 400


def test_health_stats_and_metrics(gate, monkeypatch):
    monkeypatch.delenv("BUSY_STATS_TOKEN", raising=False)
    monkeypatch.delenv("BUSY_METRICS_TOKEN", raising=False)
    client = _client(gate)

    health = client.get("/v1/health").json()
    assert health["status"] == "healthy"
    assert health["lockdown_active"] is False

    client.post("/v1/engage/try", json={"subject": "w1", "requester": "A"})
    stats = client.get("/v1/stats").json()
    assert stats["acquires_total"] >= 1
    assert stats["propagation_mode"] == "inline"
    assert stats["lockdown_active"] is False

    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "busy_gate_engagements_total" in r.text


def test_stats_and_metrics_tokens(gate, monkeypatch):
    monkeypatch.setenv("BUSY_STATS_TOKEN", "s3cret")
    monkeypatch.setenv("BUSY_METRICS_TOKEN", "m3tric")
    client = _client(gate)

    assert client.get("/v1/stats").status_code == 401
    assert client.get("/v1/stats", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    r = client.get("/metrics")
    assert r.status_code == 403
    assert r.text == "FORBIDDEN"
    assert client.get("/metrics", headers={"X-Metrics-Token": "m3tric"}).status_code == 200


def test_engage_try_is_rate_limited_per_requester(gate, monkeypatch):
    monkeypatch.setenv("BUSY_RATE_LIMIT_ENGAGE_TRY", "1/m")
    client = _client(gate)

    assert client.post("/v1/engage/try", json={"subject": "w1", "requester": "A"}).status_code == 200
    r = client.post("/v1/engage/try", json={"subject": "w1", "requester": "A"})
    assert r.status_code == 429
    assert r.json()["code"] == "BUSY_E_RATE_LIMITED"
    # Another requester has its own bucket.
    assert client.post("/v1/engage/try", json={"subject": "w1", "requester": "B"}).status_code == 409


def _post_raw(client, path, body):
    # NaN and Infinity are not strict JSON; send them as literal tokens.
    return client.post(path, content=body, headers={"Content-Type": "application/json"})


def test_non_finite_or_huge_durations_are_bad_request(gate):
    client = _client(gate)
    bad = [
        ("/v1/quota/allocate", '{"subject": "w1", "requester": "h1", "hours": NaN}'),
        ("/v1/quota/allocate", '{"subject": "w1", "requester": "h1", "hours": 1e308}'),
        ("/v1/engage/try", '{"subject": "w1", "requester": "A", "ttl_seconds": NaN}'),
        ("/v1/engage/try", '{"subject": "w1", "requester": "A", "ttl_seconds": Infinity}'),
    ]
    for path, body in bad:
        r = _post_raw(client, path, body)
        assert r.status_code == 400, (path, body, r.text)
        assert r.json()["code"] == "BUSY_E_BAD_REQUEST"

    assert client.post("/v1/engage/try", json={"subject": "w1", "requester": "A"}).status_code == 200
    r = _post_raw(client, "/v1/engage/heartbeat", '{"subject": "w1", "requester": "A", "extend_seconds": Infinity}')
    assert r.status_code == 400
    assert r.json()["code"] == "BUSY_E_BAD_REQUEST"
    assert r.json()["details"]["extend_seconds"] == "inf"

    assert client.get("/v1/quota/status/w1").json()["busy_hours_used"] == 0.0


def test_blank_identifiers_are_bad_request_over_http(gate):
    client = _client(gate)
    r = client.post("/v1/quota/allocate", json={"subject": "", "requester": "h1", "hours": 1})
    assert r.status_code == 400
    assert r.json()["code"] == "BUSY_E_BAD_REQUEST"

    r = client.post("/v1/quota/release", json={"allocation_id": "  "})
    assert r.status_code == 400
    assert r.json()["code"] == "BUSY_E_BAD_REQUEST"
