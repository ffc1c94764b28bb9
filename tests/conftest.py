import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from concierge.config import Config
from concierge.database import create_db_engine, create_session_factory, init_db
from concierge.db_models import DBProvider, DBServiceRequest, RequestStatus, RequestType
from concierge.main import create_app
from concierge.models import CallAnalysis, CallKind, CallResult, CallResultStatus, StructuredCallData

LONG_TRANSCRIPT = (
    "AI: Hi, I'm calling on behalf of a client who needs a plumber. "
    "Provider: Sure, we can help with that this week."
)


def make_config(**overrides) -> Config:
    """Offline config: in-memory database, no waits, every vendor pointed at fakes."""
    values = dict(
        DEBUG=False,
        LOG_LEVEL="WARNING",
        DATABASE_URL="sqlite://",
        API_KEY="",
        VAPI_API_KEY="test-vapi-key",
        VAPI_PHONE_NUMBER_ID="pn-test",
        VAPI_BASE_URL="https://api.vapi.ai",
        VAPI_WEBHOOK_URL="",
        MAX_CONCURRENT_CALLS=5,
        BATCH_GROUP_DELAY_SECONDS=0,
        WEBHOOK_WAIT_TIMEOUT_SECONDS=1,
        WEBHOOK_POLL_INTERVAL_SECONDS=0,
        WEBHOOK_MAX_NOT_FOUND=3,
        WEBHOOK_MAX_FETCHING_POLLS=3,
        VAPI_POLL_INTERVAL_SECONDS=0,
        VAPI_POLL_TIMEOUT_SECONDS=1,
        VAPI_ENRICHMENT_DELAYS=[],
        HTTP_MAX_RETRIES=1,
        HTTP_RETRY_BACKOFF_SECONDS=0,
        KESTRA_ENABLED=False,
        KESTRA_STRICT=True,
        TWILIO_ACCOUNT_SID="AC-test",
        TWILIO_AUTH_TOKEN="token",
        TWILIO_PHONE_NUMBER="+15550000000",
        GOOGLE_PLACES_API_KEY="test-places-key",
        PLACES_BASE_URL="https://places.googleapis.com/v1",
        LIVE_CALLS_ENABLED=True,
        TEST_PHONE_NUMBERS=[],
        FRONTEND_URL="http://localhost:3000",
    )
    values.update(overrides)
    return Config(**values)


def structured(**fields) -> dict:
    """Vendor structured data for a good provider conversation, with overrides."""
    data = {
        "availability": "available",
        "earliest_availability": "Tomorrow 9am",
        "estimated_rate": "$95/hour",
        "single_person_found": True,
        "all_criteria_met": True,
        "call_outcome": "positive",
        "recommended": True,
    }
    data.update(fields)
    return data


def make_result(
    status: CallResultStatus = CallResultStatus.COMPLETED,
    call_id: str = "call-1",
    kind: CallKind = CallKind.PROVIDER,
    summary: str = "Provider is available and licensed.",
    **data,
) -> CallResult:
    data.setdefault("call_outcome", "positive")
    return CallResult(
        status=status,
        call_id=call_id,
        call_kind=kind,
        duration=2.5,
        ended_reason="customer-ended-call",
        transcript=LONG_TRANSCRIPT,
        analysis=CallAnalysis(summary=summary, structured_data=StructuredCallData(**data)),
    )


class FakeVapi:
    """
    Scripted stand-in for api.vapi.ai and the Places API, served through
    httpx.MockTransport. Every created call has already ended by the time it
    is fetched; outcomes are scripted per dialed number, in call order.
    """

    def __init__(self):
        self.created: list[dict] = []
        self.calls: dict[str, dict] = {}
        self.scripts: dict[str, list[dict]] = {}
        self.places: list[dict] = []
        self.create_status = 201
        self.fail_gets = 0
        self.requests: list[httpx.Request] = []

    def script(self, number: str, *outcomes: dict) -> None:
        self.scripts[number] = list(outcomes)

    def _next_outcome(self, number: str) -> dict:
        queue = self.scripts.get(number) or [{}]
        outcome = queue[0] if len(queue) == 1 else queue.pop(0)
        return outcome

    def _ended_call(self, call_id: str, payload: dict) -> dict:
        number = payload["customer"]["number"]
        outcome = self._next_outcome(number)
        return {
            "id": call_id,
            "status": "ended",
            "endedReason": outcome.get("endedReason", "customer-ended-call"),
            "transcript": outcome.get("transcript", LONG_TRANSCRIPT),
            "durationMinutes": outcome.get("durationMinutes", 2.0),
            "cost": 0.12,
            "customer": payload["customer"],
            "metadata": payload.get("metadata") or {},
            "analysis": {
                "summary": outcome.get("summary", "Provider is available and licensed."),
                "structuredData": outcome.get("structuredData", structured()),
            },
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "api.vapi.ai":
            if request.method == "POST" and path == "/call":
                if self.create_status >= 400:
                    return httpx.Response(self.create_status, json={"message": "rejected"})
                payload = json.loads(request.content)
                self.created.append(payload)
                call_id = f"call-{len(self.created)}"
                self.calls[call_id] = self._ended_call(call_id, payload)
                return httpx.Response(201, json={"id": call_id, "status": "queued"})
            if request.method == "GET" and path.startswith("/call/"):
                if self.fail_gets:
                    self.fail_gets -= 1
                    return httpx.Response(503, json={"message": "unavailable"})
                call = self.calls.get(path.rsplit("/", 1)[-1])
                if call is None:
                    return httpx.Response(404, json={"message": "not found"})
                return httpx.Response(200, json=call)

        if host == "places.googleapis.com":
            return httpx.Response(200, json={"places": self.places})

        return httpx.Response(404, json={"message": f"unexpected {request.method} {request.url}"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeTwilio:
    """Records messages instead of sending them."""

    def __init__(self):
        self.sent: list[dict] = []
        self.messages = self

    def create(self, body: str, to: str, from_: str):
        self.sent.append({"body": body, "to": to, "from": from_})
        return SimpleNamespace(sid=f"SM{len(self.sent)}", status="queued")


def place(name: str, phone: str, rating: float = 4.7, reviews: int = 120) -> dict:
    return {
        "id": f"place-{name}",
        "displayName": {"text": name},
        "nationalPhoneNumber": phone,
        "rating": rating,
        "userRatingCount": reviews,
        "formattedAddress": "1 Main St, Greenville, SC",
        "businessStatus": "OPERATIONAL",
    }


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_vapi():
    return FakeVapi()


@pytest.fixture
def fake_twilio():
    return FakeTwilio()


@pytest.fixture
def app(config, fake_vapi, fake_twilio):
    return create_app(config, transport=fake_vapi.transport, twilio_client=fake_twilio)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_factory():
    """Standalone database for unit tests that do not need the app."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


def seed_request(
    session_factory,
    status: RequestStatus = RequestStatus.CALLING,
    providers: int = 2,
    request_type: RequestType = RequestType.RESEARCH_AND_BOOK,
    user_phone: str = "+18645550100",
    **fields,
):
    """Insert a request with `providers` providers; returns (request_id, [provider_id, ...])."""
    with session_factory() as db:
        service_request = DBServiceRequest(
            title="Plumber",
            location="Greenville, SC",
            criteria="Licensed, available this week",
            status=status,
            type=request_type,
            user_name="Dana",
            user_phone=user_phone,
            **fields,
        )
        db.add(service_request)
        db.flush()
        ids = []
        for index in range(providers):
            provider = DBProvider(
                request_id=service_request.id,
                name=f"Provider {index + 1}",
                phone=f"+1864555{1000 + index:04d}",
                rating=4.5 - index * 0.3,
                review_count=100 - index * 40,
            )
            db.add(provider)
            db.flush()
            ids.append(provider.id)
        db.commit()
        return service_request.id, ids
