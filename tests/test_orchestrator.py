import pytest
from fastapi import FastAPI

from concierge.db_models import DBProvider, DBServiceRequest, ProviderCallStatus, RequestStatus, RequestType
from concierge.errors import InvalidTransitionError, NotFoundError, PersistenceError
from concierge.main import build_components
from concierge.models import CallKind, ProviderCandidate
from concierge.orchestrator import TRANSITIONS, allowed_sources
from concierge.services import InteractionLogService

from conftest import make_config, make_result, seed_request, structured

FIRST_PHONE = "+18645551000"
SECOND_PHONE = "+18645551001"

BOOKED = {
    "summary": "Booked for Friday at 9am.",
    "structuredData": {
        "booking_confirmed": True,
        "confirmed_date": "Friday",
        "confirmed_time": "9am",
        "confirmation_number": "AB12",
    },
}


@pytest.fixture
async def state(fake_vapi, fake_twilio):
    app = FastAPI()
    clients = build_components(app, make_config(), transport=fake_vapi.transport, twilio_client=fake_twilio)
    yield app.state
    for client in clients:
        await client.aclose()
    app.state.engine.dispose()


def load_request(state, request_id):
    with state.session_factory() as db:
        return db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).one()


def load_providers(state, request_id):
    with state.session_factory() as db:
        return db.query(DBProvider).filter(DBProvider.request_id == request_id).order_by(DBProvider.phone).all()


def step_names(state, request_id):
    with state.session_factory() as db:
        return [log.step_name for log in InteractionLogService.list_logs(db, request_id)]


def test_transition_table_shape():
    assert TRANSITIONS[RequestStatus.COMPLETED] == frozenset()
    assert TRANSITIONS[RequestStatus.FAILED] == frozenset()
    assert set(allowed_sources(RequestStatus.RECOMMENDED)) == {RequestStatus.ANALYZING, RequestStatus.BOOKING}
    assert allowed_sources(RequestStatus.RESEARCHING) == []


async def test_invalid_transition_keeps_status(state):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError) as excinfo:
        state.orchestrator.transition(request_id, RequestStatus.BOOKING)
    assert excinfo.value.current == "COMPLETED"
    assert load_request(state, request_id).status == RequestStatus.COMPLETED


async def test_transition_on_missing_request(state):
    with pytest.raises(NotFoundError):
        state.orchestrator.transition("missing", RequestStatus.ANALYZING)


async def test_transition_writes_fields_and_log(state):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING)
    state.orchestrator.transition(request_id, RequestStatus.FAILED, log_step="Request Failed", final_outcome="nope")
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.FAILED
    assert stored.final_outcome == "nope"
    assert step_names(state, request_id) == ["Request Failed"]


async def test_calls_lead_to_recommendations_and_one_sms(state, fake_vapi, fake_twilio):
    fake_vapi.script(SECOND_PHONE, {"endedReason": "voicemail", "structuredData": {"call_outcome": "voicemail"}})
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING)

    batch = await state.orchestrator.start_calls(request_id)

    assert batch.stats.total == 2
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.RECOMMENDED
    recommendations = stored.recommendations["recommendations"]
    assert [r["providerName"] for r in recommendations] == ["Provider 1"]
    assert stored.recommendations["stats"]["disqualifiedProviders"] == 1

    first, second = load_providers(state, request_id)
    assert first.call_status == ProviderCallStatus.COMPLETED
    assert second.call_status == ProviderCallStatus.VOICEMAIL
    assert first.call_id and first.call_id != second.call_id

    assert len(fake_twilio.sent) == 1
    assert stored.notification_method == "sms"
    assert {"All Calls Completed", "Recommendations Ready"} <= set(step_names(state, request_id))

    # Already called providers are never dialed again
    assert await state.orchestrator.on_call_settled(request_id) is False
    assert len(fake_vapi.created) == 2


async def test_no_qualified_providers_sets_outcome_without_sms(state, fake_vapi, fake_twilio):
    for phone in (FIRST_PHONE, SECOND_PHONE):
        fake_vapi.script(phone, {"endedReason": "voicemail", "structuredData": {"call_outcome": "voicemail"}})
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING)

    await state.orchestrator.start_calls(request_id)

    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.RECOMMENDED
    assert stored.recommendations["recommendations"] == []
    assert stored.final_outcome.startswith("Unfortunately")
    assert fake_twilio.sent == []


async def test_pending_calls_hold_the_request_in_calling(state):
    request_id, provider_ids = seed_request(state.session_factory, status=RequestStatus.CALLING)
    state.reconciler.mark_queued([provider_ids[0]])
    assert await state.orchestrator.on_call_settled(request_id) is False
    assert load_request(state, request_id).status == RequestStatus.CALLING


async def test_direct_task_completes_with_summary(state, fake_vapi):
    fake_vapi.script(FIRST_PHONE, {"summary": "They confirmed the order is ready."})
    request_id, _ = seed_request(
        state.session_factory, status=RequestStatus.CALLING, providers=1, request_type=RequestType.DIRECT_TASK
    )

    await state.orchestrator.start_calls(request_id)

    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.final_outcome == "They confirmed the order is ready."


async def test_direct_task_without_answer_fails(state, fake_vapi):
    fake_vapi.create_status = 400
    request_id, _ = seed_request(
        state.session_factory, status=RequestStatus.CALLING, providers=1, request_type=RequestType.DIRECT_TASK
    )
    await state.orchestrator.start_calls(request_id)
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.FAILED
    assert "error" in stored.final_outcome


async def test_research_results_move_to_calling(state):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.RESEARCHING, providers=0)
    providers = state.orchestrator.on_research_complete(
        request_id,
        [
            ProviderCandidate(name="Dialable", phone="(864) 555-2000", rating=4.6),
            ProviderCandidate(name="No Phone"),
        ],
    )
    assert [p.name for p in providers] == ["Dialable"]
    assert providers[0].phone == "+18645552000"
    assert load_request(state, request_id).status == RequestStatus.CALLING


async def test_research_without_dialable_providers_fails(state):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.RESEARCHING, providers=0)
    assert state.orchestrator.on_research_complete(request_id, [ProviderCandidate(name="Nope", phone="12")]) == []
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.FAILED
    assert stored.final_outcome.startswith("No qualified providers found")


async def recommended_request(state):
    request_id, provider_ids = seed_request(state.session_factory, status=RequestStatus.CALLING)
    await state.orchestrator.start_calls(request_id)
    assert load_request(state, request_id).status == RequestStatus.RECOMMENDED
    return request_id, provider_ids


async def test_confirmed_booking_completes_request(state, fake_vapi, fake_twilio):
    fake_vapi.script(FIRST_PHONE, {}, BOOKED)
    request_id, provider_ids = await recommended_request(state)

    result = await state.orchestrator.book(request_id, provider_ids[0], preferred_datetime="Friday morning")

    assert result.call_kind == CallKind.BOOKING
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.selected_provider_id == provider_ids[0]
    assert stored.final_outcome == "Booked with Provider 1 for Friday 9am"

    provider = load_providers(state, request_id)[0]
    assert provider.booking_confirmed is True
    assert provider.confirmation_number == "AB12"
    assert provider.call_status == ProviderCallStatus.COMPLETED
    assert "Confirmation #: AB12" in fake_twilio.sent[-1]["body"]


async def test_failed_booking_returns_to_recommended(state, fake_vapi):
    fake_vapi.script(FIRST_PHONE, {}, {"structuredData": {"booking_confirmed": False}})
    request_id, provider_ids = await recommended_request(state)

    await state.orchestrator.book(request_id, provider_ids[0])

    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.RECOMMENDED
    assert stored.selected_provider_id is None
    assert "Booking Failed: Provider 1" in step_names(state, request_id)


async def test_selection_requires_recommended_status(state):
    request_id, provider_ids = seed_request(state.session_factory, status=RequestStatus.CALLING)
    with pytest.raises(InvalidTransitionError):
        state.orchestrator.select_provider(request_id, provider_ids[0])


async def test_select_by_rank(state):
    request_id, provider_ids = await recommended_request(state)
    with pytest.raises(NotFoundError):
        state.orchestrator.select_by_rank(request_id, 3)

    assert state.orchestrator.select_by_rank(request_id, 2) == provider_ids[1]
    assert load_request(state, request_id).status == RequestStatus.BOOKING
    with pytest.raises(InvalidTransitionError):
        state.orchestrator.select_by_rank(request_id, 1)


async def test_refresh_recommendations_in_place(state):
    request_id, _ = await recommended_request(state)
    response = state.orchestrator.refresh_recommendations(request_id)
    assert len(response.recommendations) == 2
    assert load_request(state, request_id).status == RequestStatus.RECOMMENDED


async def test_refresh_recommendations_rejected_while_calling(state):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING)
    with pytest.raises(InvalidTransitionError):
        state.orchestrator.refresh_recommendations(request_id)


async def test_settled_booking_webhook_completes_once(state, fake_vapi):
    request_id, provider_ids = await recommended_request(state)
    state.orchestrator.select_provider(request_id, provider_ids[0])
    state.reconciler.mark_call_in_progress(provider_ids[0], "booking-call", CallKind.BOOKING)
    result = make_result(
        call_id="booking-call", kind=CallKind.BOOKING, booking_confirmed=True, confirmed_date="Monday"
    )
    state.reconciler.save_call_result(provider_ids[0], request_id, result)

    await state.orchestrator.handle_settled_call(result, request_id, provider_ids[0])
    await state.orchestrator.handle_settled_call(result, request_id, provider_ids[0])

    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.COMPLETED
    assert step_names(state, request_id).count("Booking Completed") == 1


async def test_settled_provider_webhook_advances_calling(state):
    request_id, provider_ids = seed_request(state.session_factory, status=RequestStatus.CALLING, providers=1)
    result = make_result(call_id="hook-1", **structured())
    state.reconciler.mark_call_in_progress(provider_ids[0], "hook-1")
    state.reconciler.save_call_result(provider_ids[0], request_id, result)

    await state.orchestrator.handle_settled_call(result, request_id, provider_ids[0])

    assert load_request(state, request_id).status == RequestStatus.RECOMMENDED


async def no_sleep(_seconds):
    return None


async def test_unsaved_call_result_is_retried(state, monkeypatch):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING, providers=1)
    real_save = state.reconciler.save_call_result
    failures = [PersistenceError("database is locked")]

    def flaky_save(provider_id, service_request_id, result):
        if failures:
            raise failures.pop()
        return real_save(provider_id, service_request_id, result)

    monkeypatch.setattr(state.reconciler, "save_call_result", flaky_save)
    state.orchestrator._sleep = no_sleep

    await state.orchestrator.start_calls(request_id)

    assert load_providers(state, request_id)[0].call_status == ProviderCallStatus.COMPLETED
    assert load_request(state, request_id).status == RequestStatus.RECOMMENDED


async def test_unsavable_call_result_closes_out_provider(state, monkeypatch):
    request_id, _ = seed_request(state.session_factory, status=RequestStatus.CALLING, providers=1)
    attempts = []

    def failing_save(provider_id, service_request_id, result):
        attempts.append(result.call_id)
        raise PersistenceError("database is locked")

    monkeypatch.setattr(state.reconciler, "save_call_result", failing_save)
    state.orchestrator._sleep = no_sleep

    await state.orchestrator.start_calls(request_id)

    assert attempts == ["call-1", "call-1", "call-1"]
    provider = load_providers(state, request_id)[0]
    assert provider.call_status == ProviderCallStatus.ERROR
    assert provider.call_result["error"].startswith("Result could not be saved")
    # The request is not left waiting in CALLING
    stored = load_request(state, request_id)
    assert stored.status == RequestStatus.RECOMMENDED
    assert stored.recommendations["recommendations"] == []


async def test_mark_call_failed_keeps_landed_results(state):
    request_id, provider_ids = seed_request(state.session_factory, status=RequestStatus.CALLING, providers=1)
    state.reconciler.mark_call_in_progress(provider_ids[0], "call-a")
    state.reconciler.save_call_result(provider_ids[0], request_id, make_result(call_id="call-a"))

    assert not state.reconciler.mark_call_failed(provider_ids[0], "call-a", "late failure")
    assert load_providers(state, request_id)[0].call_status == ProviderCallStatus.COMPLETED
