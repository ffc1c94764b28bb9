import httpx

from concierge.db_models import DBInteractionLog, DBProvider, ProviderCallStatus
from concierge.models import CallResultStatus, DataStatus
from concierge.reconciler import ResultReconciler
from concierge.vapi_client import VapiApiClient
from concierge.webhook import WebhookReceiver, call_from_message
from concierge.webhook_cache import WebhookCache

from conftest import LONG_TRANSCRIPT, seed_request, structured


async def no_sleep(_seconds):
    return None


def end_of_call(call_id, request_id="", provider_id="", kind="provider", **extra):
    message = {
        "type": "end-of-call-report",
        "endedReason": "customer-ended-call",
        "call": {
            "id": call_id,
            "customer": {"number": "+18645551000", "name": "Provider 1"},
            "metadata": {"serviceRequestId": request_id, "providerId": provider_id, "callKind": kind},
        },
        "analysis": {"summary": "Webhook summary.", "structuredData": structured()},
        "transcript": "short",
    }
    message.update(extra)
    return {"message": message}


def build_receiver(session_factory, vapi=None, on_settled=None):
    cache = WebhookCache()
    reconciler = ResultReconciler(session_factory)
    receiver = WebhookReceiver(
        cache,
        reconciler,
        vapi=vapi,
        enrichment_delays=[0, 0],
        on_settled=on_settled,
        sleep=no_sleep,
    )
    return receiver, cache


def test_call_from_message_flattens_report():
    call = call_from_message(end_of_call("call-9")["message"])
    assert call["id"] == "call-9"
    assert call["status"] == "ended"
    assert call["analysis"]["summary"] == "Webhook summary."
    assert call["endedReason"] == "customer-ended-call"


async def test_malformed_payloads_are_acknowledged_and_dropped(session_factory):
    receiver, cache = build_receiver(session_factory)

    assert (await receiver.handle_webhook(["not", "a", "dict"]))["success"] is False
    assert (await receiver.handle_webhook({"message": {"type": "end-of-call-report"}}))["success"] is False
    assert cache.stats()["size"] == 0


async def test_non_terminal_events_are_not_cached(session_factory):
    receiver, cache = build_receiver(session_factory)
    ack = await receiver.handle_webhook({"message": {"type": "status-update", "call": {"id": "call-1"}}})
    assert ack["success"] is True
    assert "not processed" in ack["message"]
    assert not cache.has("call-1")


async def test_end_of_call_is_cached_then_persisted(session_factory):
    request_id, (provider_id, _) = seed_request(session_factory)
    settled = []

    async def on_settled(result, req_id, prov_id):
        settled.append((result.call_id, req_id, prov_id))

    receiver, cache = build_receiver(session_factory, on_settled=on_settled)
    ack = await receiver.handle_webhook(end_of_call("call-1", request_id, provider_id))

    assert ack == {
        "success": True,
        "message": "Webhook processed and cached, background enrichment triggered",
        "callId": "call-1",
    }
    assert cache.get("call-1").status == CallResultStatus.COMPLETED

    await receiver.drain()

    assert cache.get("call-1").data_status == DataStatus.COMPLETE
    assert settled == [("call-1", request_id, provider_id)]
    with session_factory() as db:
        provider = db.get(DBProvider, provider_id)
        assert provider.call_status == ProviderCallStatus.COMPLETED
        assert provider.call_id == "call-1"
        assert provider.call_summary == "Webhook summary."


async def test_enrichment_merges_vendor_data(session_factory, fake_vapi):
    request_id, (provider_id, _) = seed_request(session_factory)
    fake_vapi.calls["call-7"] = {
        "id": "call-7",
        "status": "ended",
        "transcript": LONG_TRANSCRIPT,
        "analysis": {"summary": "Enriched summary.", "structuredData": {"estimated_rate": "$120"}},
    }
    vapi = VapiApiClient("key", httpx.AsyncClient(transport=fake_vapi.transport), backoff=0, sleep=no_sleep)
    receiver, cache = build_receiver(session_factory, vapi=vapi)

    await receiver.handle_webhook(end_of_call("call-7", request_id, provider_id))
    await receiver.drain()

    entry = cache.get("call-7")
    assert entry.data_status == DataStatus.COMPLETE
    assert entry.transcript == LONG_TRANSCRIPT
    assert entry.analysis.summary == "Enriched summary."
    assert entry.structured.estimated_rate == "$120"
    assert entry.fetch_attempts == 1


async def test_enrichment_exhaustion_still_persists(session_factory, fake_vapi):
    request_id, (provider_id, _) = seed_request(session_factory)
    vapi = VapiApiClient("key", httpx.AsyncClient(transport=fake_vapi.transport), backoff=0, sleep=no_sleep)
    receiver, cache = build_receiver(session_factory, vapi=vapi)

    # The vendor never knows this call, so every fetch fails
    await receiver.handle_webhook(end_of_call("call-404", request_id, provider_id))
    await receiver.drain()

    entry = cache.get("call-404")
    assert entry.data_status == DataStatus.FETCH_FAILED
    assert entry.fetch_attempts == 2
    with session_factory() as db:
        assert db.get(DBProvider, provider_id).call_id == "call-404"


async def test_duplicate_webhooks_log_once(session_factory):
    request_id, (provider_id, _) = seed_request(session_factory)
    receiver, _ = build_receiver(session_factory)

    await receiver.handle_webhook(end_of_call("call-1", request_id, provider_id))
    await receiver.handle_webhook(end_of_call("call-1", request_id, provider_id))
    await receiver.drain()

    with session_factory() as db:
        logs = db.query(DBInteractionLog).filter(DBInteractionLog.call_id == "call-1").all()
        assert len(logs) == 1
