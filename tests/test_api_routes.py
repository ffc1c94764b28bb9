import pytest
from fastapi.testclient import TestClient

from concierge.db_models import DBProvider, ProviderCallStatus, RequestStatus
from concierge.main import create_app

from conftest import make_config, place, seed_request, structured

BOOKED = {
    "summary": "Booked for Friday at 9am.",
    "structuredData": {
        "booking_confirmed": True,
        "confirmed_date": "Friday",
        "confirmed_time": "9am",
        "confirmation_number": "AB12",
    },
}


def create_body(**overrides):
    body = {
        "title": "Plumber",
        "location": "Greenville, SC",
        "criteria": "Licensed, available this week",
        "userName": "Dana",
        "userPhone": "864-555-0100",
    }
    body.update(overrides)
    return body


def run_pipeline(client, fake_vapi):
    fake_vapi.places = [
        place("Ace Plumbing", "(864) 555-1000", rating=4.8, reviews=120),
        place("Best Pipes", "(864) 555-1001", rating=4.2, reviews=15),
        place("Low Rated", "(864) 555-1002", rating=3.1, reviews=4),
    ]
    response = client.post("/api/v1/requests", json=create_body())
    assert response.status_code == 201
    return response.json()["data"]["id"]


def provider_id_by_name(client, request_id, name):
    providers = client.get(f"/api/v1/requests/{request_id}").json()["data"]["providers"]
    return next(p["id"] for p in providers if p["name"] == name)


def test_root(client):
    data = client.get("/").json()
    assert data["endpoints"]["vapi_webhook"] == "/api/v1/vapi/webhook"


def test_create_request_runs_research_calls_and_notifies(client, fake_vapi, fake_twilio):
    request_id = run_pipeline(client, fake_vapi)

    data = client.get(f"/api/v1/requests/{request_id}").json()["data"]

    assert data["status"] == "RECOMMENDED"
    assert data["userPhone"] == "+18645550100"
    assert sorted(p["name"] for p in data["providers"]) == ["Ace Plumbing", "Best Pipes"]
    assert {p["callStatus"] for p in data["providers"]} == {"completed"}
    recommendations = data["recommendations"]["recommendations"]
    assert recommendations[0]["providerName"] == "Ace Plumbing"
    assert data["notificationMethod"] == "sms"
    steps = [entry["stepName"] for entry in data["interactionLogs"]]
    assert steps[0] == "Research Completed"
    assert "Recommendations Ready" in steps

    assert len(fake_vapi.created) == 2
    assert len(fake_twilio.sent) == 1
    assert fake_twilio.sent[0]["to"] == "+18645550100"


def test_create_request_without_auto_start(client, fake_vapi):
    response = client.post("/api/v1/requests", json=create_body(autoStart=False))
    assert response.json()["data"]["status"] == "RESEARCHING"
    assert fake_vapi.requests == []


def test_create_request_validation_details(client):
    response = client.post("/api/v1/requests", json={"location": "", "minRating": 9})
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "validation_error"
    fields = {detail["field"] for detail in body["details"]}
    assert {"title", "location", "minRating"} <= fields


def test_direct_task_calls_the_given_contact(client, fake_vapi):
    fake_vapi.script("+18645552222", {"summary": "Pharmacy confirmed the refill is ready."})
    response = client.post(
        "/api/v1/requests",
        json=create_body(type="direct_task", directContact={"name": "Main St Pharmacy", "phone": "864 555 2222"}),
    )
    request_id = response.json()["data"]["id"]

    data = client.get(f"/api/v1/requests/{request_id}").json()["data"]
    assert data["status"] == "COMPLETED"
    assert data["finalOutcome"] == "Pharmacy confirmed the refill is ready."
    assert fake_vapi.created[0]["customer"]["number"] == "+18645552222"


def test_direct_task_requires_contact(client):
    response = client.post("/api/v1/requests", json=create_body(type="direct_task"))
    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_error"
    assert [d["field"] for d in body["details"]] == ["directContact"]


def test_unknown_request_is_404(client):
    response = client.get("/api/v1/requests/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "error": "not_found",
        "message": "Service request does-not-exist not found",
    }


def test_list_requests_by_status(client, app):
    seed_request(app.state.session_factory, status=RequestStatus.COMPLETED)
    calling_id, _ = seed_request(app.state.session_factory, status=RequestStatus.CALLING)

    data = client.get("/api/v1/requests", params={"status": "CALLING"}).json()["data"]
    assert [r["id"] for r in data] == [calling_id]


def test_single_call_is_persisted_and_settles_request(client, app):
    request_id, provider_ids = seed_request(app.state.session_factory, providers=1)
    response = client.post(
        "/api/v1/providers/call",
        json={
            "providerName": "Provider 1",
            "providerPhone": "(864) 555-1000",
            "serviceNeeded": "Plumber",
            "serviceRequestId": request_id,
            "providerId": provider_ids[0],
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "completed"

    data = client.get(f"/api/v1/requests/{request_id}").json()["data"]
    assert data["providers"][0]["callId"] == body["data"]["call_id"]
    assert data["status"] == "RECOMMENDED"


def test_single_call_rejects_undialable_number(client):
    response = client.post(
        "/api/v1/providers/call",
        json={"providerName": "Bad", "providerPhone": "555-12345", "serviceNeeded": "Plumber"},
    )
    assert response.status_code == 422
    assert response.json()["details"] == [{"field": "providerPhone", "message": "Not a dialable phone number: '555-12345'"}]


def test_batch_call_without_request(client, fake_vapi):
    fake_vapi.script("+18645551001", {"endedReason": "voicemail", "structuredData": {"call_outcome": "voicemail"}})
    response = client.post(
        "/api/v1/providers/batch-call",
        json={
            "providers": [
                {"name": "A", "phone": "+18645551000"},
                {"name": "B", "phone": "+18645551001"},
            ],
            "serviceNeeded": "Plumber",
        },
    )
    data = response.json()["data"]
    assert response.json()["success"] is True
    assert [r["status"] for r in data["results"]] == ["completed", "voicemail"]
    assert data["stats"]["total"] == 2
    assert data["stats"]["successful"] == 2
    assert data["errors"] == []


def test_batch_call_async_then_status(client, app, fake_twilio):
    request_id, provider_ids = seed_request(app.state.session_factory)
    before = client.get(f"/api/v1/providers/batch-status/{request_id}").json()["data"]
    assert before["status"] == "not_started"
    assert before["byStatus"]["not_called"] == 2

    response = client.post(
        "/api/v1/providers/batch-call-async",
        json={
            "serviceRequestId": request_id,
            "serviceNeeded": "Plumber",
            "providers": [
                {"id": pid, "name": f"Provider {i + 1}", "phone": f"+1864555{1000 + i}"}
                for i, pid in enumerate(provider_ids)
            ],
        },
    )
    assert response.status_code == 202
    assert response.json()["data"] == {
        "serviceRequestId": request_id,
        "providersQueued": 2,
        "status": "accepted",
    }

    after = client.get(f"/api/v1/providers/batch-status/{request_id}").json()["data"]
    assert after["status"] == "completed"
    assert after["completed"] == 2
    assert after["requestStatus"] == "RECOMMENDED"
    assert len(fake_twilio.sent) == 1


def test_batch_call_async_requires_ids(client):
    response = client.post(
        "/api/v1/providers/batch-call-async",
        json={"serviceNeeded": "Plumber", "providers": [{"name": "A", "phone": "+18645551000"}]},
    )
    assert response.status_code == 422


def test_recommend_while_calling_conflicts(client, app):
    request_id, _ = seed_request(app.state.session_factory)
    response = client.post("/api/v1/providers/recommend", json={"serviceRequestId": request_id})
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


def test_recommend_recomputes_payload(client, fake_vapi):
    request_id = run_pipeline(client, fake_vapi)
    response = client.post("/api/v1/providers/recommend", json={"serviceRequestId": request_id})
    data = response.json()["data"]
    assert data["stats"]["totalCalls"] == 2
    assert data["recommendations"][0]["providerName"] == "Ace Plumbing"


def test_system_status_without_kestra(client):
    data = client.get("/api/v1/providers/system-status").json()["data"]
    assert data["activeMethod"] == "direct_vapi"
    assert data["webhookMode"] == "polling"
    assert data["kestra"]["enabled"] is False


def test_schedule_books_and_completes(client, fake_vapi, fake_twilio):
    fake_vapi.script("+18645551000", {}, BOOKED)
    request_id = run_pipeline(client, fake_vapi)
    provider_id = provider_id_by_name(client, request_id, "Ace Plumbing")

    response = client.post(
        "/api/v1/bookings/schedule",
        json={"serviceRequestId": request_id, "providerId": provider_id, "preferredDateTime": "Friday morning"},
    )

    body = response.json()
    assert body["success"] is True
    assert body["data"]["confirmationNumber"] == "AB12"
    booking = client.get(f"/api/v1/bookings/{request_id}").json()["data"]
    assert booking["status"] == "COMPLETED"
    assert booking["booking"]["bookingConfirmed"] is True
    assert booking["finalOutcome"] == "Booked with Ace Plumbing for Friday 9am"
    assert "Confirmation #: AB12" in fake_twilio.sent[-1]["body"]


def test_schedule_async_failed_booking_returns_to_recommended(client, fake_vapi):
    fake_vapi.script("+18645551000", {}, {"structuredData": {"booking_confirmed": False}})
    request_id = run_pipeline(client, fake_vapi)
    provider_id = provider_id_by_name(client, request_id, "Ace Plumbing")

    response = client.post(
        "/api/v1/bookings/schedule-async",
        json={"serviceRequestId": request_id, "providerId": provider_id},
    )
    assert response.status_code == 202

    booking = client.get(f"/api/v1/bookings/{request_id}").json()["data"]
    assert booking["status"] == "RECOMMENDED"
    assert booking["booking"] is None


def test_schedule_requires_recommended_request(client, app):
    request_id, provider_ids = seed_request(app.state.session_factory)
    response = client.post(
        "/api/v1/bookings/schedule-async",
        json={"serviceRequestId": request_id, "providerId": provider_ids[0]},
    )
    assert response.status_code == 409


def test_notification_send_is_idempotent(client, fake_vapi, fake_twilio):
    request_id = run_pipeline(client, fake_vapi)
    response = client.post("/api/v1/notifications/send", json={"serviceRequestId": request_id})
    assert response.json()["data"]["method"] == "already_sent"
    assert len(fake_twilio.sent) == 1


def test_vapi_webhook_caches_result(client):
    payload = {
        "message": {
            "type": "end-of-call-report",
            "endedReason": "customer-ended-call",
            "call": {"id": "hook-call", "customer": {"number": "+18645551000"}},
            "analysis": {"summary": "From the webhook.", "structuredData": structured()},
        }
    }
    ack = client.post("/api/v1/vapi/webhook", json=payload).json()
    assert ack["success"] is True
    assert ack["callId"] == "hook-call"

    cached = client.get("/api/v1/vapi/calls/hook-call")
    assert cached.status_code == 200
    assert cached.json()["data"]["analysis"]["summary"] == "From the webhook."

    assert client.get("/api/v1/vapi/cache/stats").json()["data"]["size"] >= 1
    assert client.delete("/api/v1/vapi/calls/hook-call").json()["deleted"] is True
    assert client.get("/api/v1/vapi/calls/hook-call").status_code == 404


def test_vapi_webhook_rejects_non_json_body_with_200(client):
    response = client.post("/api/v1/vapi/webhook", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_cache_endpoints_require_api_key_when_configured(fake_vapi, fake_twilio):
    app = create_app(make_config(API_KEY="secret"), transport=fake_vapi.transport, twilio_client=fake_twilio)
    with TestClient(app) as client:
        assert client.get("/api/v1/vapi/cache/stats").status_code == 403
        assert client.get("/api/v1/vapi/cache/stats", headers={"X-API-Key": "secret"}).status_code == 200


@pytest.fixture
def strict_kestra_client(fake_vapi, fake_twilio):
    """Kestra required but unreachable: the fake transport answers its health check with 404."""
    config = make_config(KESTRA_ENABLED=True, KESTRA_STRICT=True)
    app = create_app(config, transport=fake_vapi.transport, twilio_client=fake_twilio)
    with TestClient(app) as client:
        yield client


def batch_body(request_id, provider_ids):
    return {
        "serviceRequestId": request_id,
        "serviceNeeded": "Plumber",
        "providers": [
            {"id": pid, "name": f"Provider {i + 1}", "phone": f"+1864555{1000 + i}"}
            for i, pid in enumerate(provider_ids)
        ],
    }


def test_failed_schedule_returns_request_to_recommended(strict_kestra_client, fake_vapi):
    client = strict_kestra_client
    request_id, provider_ids = seed_request(client.app.state.session_factory, status=RequestStatus.RECOMMENDED)

    response = client.post(
        "/api/v1/bookings/schedule",
        json={"serviceRequestId": request_id, "providerId": provider_ids[0]},
    )

    assert response.status_code == 503
    assert response.json()["error"] == "workflow_engine_unavailable"
    booking = client.get(f"/api/v1/bookings/{request_id}").json()["data"]
    assert booking["status"] == "RECOMMENDED"
    assert booking["booking"] is None
    assert fake_vapi.created == []


def test_unavailable_kestra_leaves_batch_providers_uncalled(strict_kestra_client, fake_vapi):
    client = strict_kestra_client
    request_id, provider_ids = seed_request(client.app.state.session_factory)

    response = client.post("/api/v1/providers/batch-call", json=batch_body(request_id, provider_ids))

    assert response.status_code == 503
    status = client.get(f"/api/v1/providers/batch-status/{request_id}").json()["data"]
    assert status["byStatus"]["not_called"] == 2
    assert status["queued"] == 0
    assert status["status"] == "not_started"
    assert fake_vapi.created == []


def test_batch_call_skips_providers_with_a_final_result(client, app, fake_vapi):
    request_id, provider_ids = seed_request(app.state.session_factory)
    with app.state.session_factory() as db:
        done = db.query(DBProvider).filter(DBProvider.id == provider_ids[0]).one()
        done.call_status = ProviderCallStatus.COMPLETED
        done.call_id = "old-call"
        done.call_summary = "original summary"
        db.commit()

    response = client.post("/api/v1/providers/batch-call", json=batch_body(request_id, provider_ids))

    assert response.status_code == 200
    assert [c["customer"]["number"] for c in fake_vapi.created] == ["+18645551001"]
    providers = {p["id"]: p for p in client.get(f"/api/v1/requests/{request_id}").json()["data"]["providers"]}
    assert providers[provider_ids[0]]["callId"] == "old-call"
    assert providers[provider_ids[1]]["callStatus"] == "completed"


def test_batch_call_rejects_providers_of_another_request(client, app, fake_vapi):
    request_id, _ = seed_request(app.state.session_factory)
    _, foreign_ids = seed_request(app.state.session_factory, providers=1)

    response = client.post("/api/v1/providers/batch-call", json=batch_body(request_id, foreign_ids))

    assert response.status_code == 404
    assert fake_vapi.created == []
