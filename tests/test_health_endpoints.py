def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["service"] == "concierge-api"


def test_health_ready(client):
    resp = client.get("/health/ready")
    assert resp.status_code == 200
    checks = resp.json()
    assert checks["database"] is True
    assert checks["ready"] is True
    assert checks["vapi"] == "configured"
    assert checks["twilio"] == "configured"


def test_health_info(client):
    resp = client.get("/health/info")
    assert resp.status_code == 200
    data = resp.json()
    assert data["service"] == "concierge-api"
    assert data["configuration"]["webhook_mode"] == "polling"
    assert data["features"]["sms_notifications"] is True
    assert data["features"]["live_calls"] is True


def test_metrics_endpoint(client):
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "text/plain" in resp.headers.get("content-type", "")
    # Should include at least one metric name from concierge.metrics
    assert "api_requests_total" in resp.text
    assert 'endpoint="/health"' in resp.text
