from concierge.db_models import DBServiceRequest, RequestStatus
from concierge.routers.twilio import NO_REQUEST_REPLY, STILL_WORKING_REPLY, parse_selection
from concierge.twiml_builder import build_message_twiml, sanitize_message_text

from conftest import seed_request

USER_PHONE = "+18645550100"
BOOKED = {"structuredData": {"booking_confirmed": True, "confirmed_date": "Friday", "confirmed_time": "9am"}}


def recommendations(provider_ids):
    return {
        "recommendations": [
            {"providerId": pid, "providerName": f"Provider {i + 1}", "score": 90 - i}
            for i, pid in enumerate(provider_ids)
        ]
    }


def attach_recommendations(app, request_id, provider_ids, **fields):
    values = {DBServiceRequest.recommendations: recommendations(provider_ids)}
    values.update({getattr(DBServiceRequest, name): value for name, value in fields.items()})
    with app.state.session_factory() as db:
        db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).update(values)
        db.commit()


def sms(client, body, sender=USER_PHONE):
    return client.post("/api/v1/twilio/webhook", data={"From": sender, "Body": body, "MessageSid": "SM-in"})


def load_request(app, request_id):
    with app.state.session_factory() as db:
        return db.query(DBServiceRequest).filter(DBServiceRequest.id == request_id).one()


def test_parse_selection():
    assert parse_selection("2") == 2
    assert parse_selection(" 1 please") == 1
    assert parse_selection("the first one") is None
    assert parse_selection("") is None


def test_message_text_is_escaped_and_cleaned():
    assert sanitize_message_text("Tom & Jerry <Plumbing>") == "Tom &amp; Jerry &lt;Plumbing&gt;"
    assert sanitize_message_text("a\x07b   c\nd") == "ab c\nd"
    assert sanitize_message_text("") == "Thanks for your message. - AI Concierge"
    assert "<Message>1 &lt; 2</Message>" in build_message_twiml("1 < 2")


def test_reply_without_request(client):
    resp = sms(client, "1", sender="+19995550000")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert sanitize_message_text(NO_REQUEST_REPLY) in resp.text


def test_reply_while_calls_are_running(client, app):
    request_id, provider_ids = seed_request(app.state.session_factory, status=RequestStatus.CALLING)
    attach_recommendations(app, request_id, provider_ids)
    assert STILL_WORKING_REPLY in sms(client, "1").text


def test_invalid_choice_lists_options(client, app):
    request_id, provider_ids = seed_request(app.state.session_factory, status=RequestStatus.RECOMMENDED)
    attach_recommendations(app, request_id, provider_ids)

    text = sms(client, "7").text
    assert "Please reply with 1, 2 to select a provider:" in text
    assert "1. Provider 1" in text
    assert "2. Provider 2" in text
    assert load_request(app, request_id).status == RequestStatus.RECOMMENDED


def test_selection_books_provider(client, app, fake_vapi, fake_twilio):
    fake_vapi.script("+18645551001", BOOKED)
    request_id, provider_ids = seed_request(app.state.session_factory, status=RequestStatus.RECOMMENDED)
    attach_recommendations(app, request_id, provider_ids)

    text = sms(client, "2").text

    assert "Great choice! I'm booking Provider 2 for you now." in text
    stored = load_request(app, request_id)
    assert stored.status == RequestStatus.COMPLETED
    assert stored.selected_provider_id == provider_ids[1]
    assert fake_vapi.created[-1]["customer"]["number"] == "+18645551001"
    assert "Provider: Provider 2" in fake_twilio.sent[-1]["body"]

    # Replying again after the booking finished gets the confirmation
    again = sms(client, "2").text
    assert "Booked with Provider 2 for Friday 9am" in again


def test_reply_while_booking(client, app):
    request_id, provider_ids = seed_request(app.state.session_factory, status=RequestStatus.BOOKING)
    attach_recommendations(app, request_id, provider_ids, selected_provider_id=provider_ids[0])
    assert "already booking your selected provider" in sms(client, "1").text
