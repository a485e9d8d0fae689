from app.models.order import OrderStatus


def test_metrics_endpoint_returns_typed_payload(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    payload = response.json()
    assert isinstance(payload["counters"], dict)
    assert isinstance(payload["timings"], dict)


def test_metrics_endpoint_exposes_explicit_response_schema(client):
    payload = client.get("/openapi.json").json()
    metrics_get = payload["paths"]["/metrics"]["get"]

    assert metrics_get["responses"]["200"]["content"]["application/json"]["schema"]["$ref"] == (
        "#/components/schemas/MetricsResponse"
    )


def test_metrics_capture_readiness_check_counters(client):
    assert client.get("/ready").status_code == 200

    counters = client.get("/metrics").json()["counters"]
    assert counters["readiness_dependency_checked_total"] >= 1
    assert counters.get("readiness_dependency_error_total", 0) == 0


def test_metrics_capture_readiness_error_counter_on_degraded_check(client, monkeypatch):
    from app.routers import health

    monkeypatch.setattr(health, "_database_dependency_status", lambda *_a, **_k: "error")

    assert client.get("/ready").status_code == 503

    counters = client.get("/metrics").json()["counters"]
    assert counters["readiness_dependency_error_total"] >= 1


def test_metrics_include_export_timing(client, make_order):
    make_order()

    assert client.get("/api/v1/admin/orders/export").status_code == 200

    timings = client.get("/metrics").json()["timings"]
    assert timings["export_stream_seconds"]["count"] == 1


def test_metrics_report_in_memory_rate_limit_buckets(client, make_order):
    order = make_order(status=OrderStatus.DELIVERED)
    client.post(
        f"/api/v1/admin/orders/{order.id}/refunds",
        json={"amount": 100, "reason": "OTHER"},
        headers={"X-Actor-Id": "admin-1"},
    )

    assert client.get("/metrics").json()["rate_limit_buckets"] == 1
