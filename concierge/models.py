"""Value objects shared by the call client, webhook receiver and reconciler."""

import enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from concierge.db_models import ContactChannel, ProviderCallStatus, RequestType, Urgency


class CallResultStatus(str, enum.Enum):
    """Normalized outcome of one outbound call."""
    COMPLETED = "completed"
    VOICEMAIL = "voicemail"
    TIMEOUT = "timeout"
    ERROR = "error"

    def to_provider_status(self) -> ProviderCallStatus:
        return ProviderCallStatus(self.value)


class DataStatus(str, enum.Enum):
    """How far a webhook cache entry has been enriched."""
    PARTIAL = "partial"
    FETCHING = "fetching"
    COMPLETE = "complete"
    FETCH_FAILED = "fetch_failed"


class CallMethod(str, enum.Enum):
    DIRECT_VAPI = "direct_vapi"
    KESTRA = "kestra"


class CallKind(str, enum.Enum):
    """What a call is for; carried in the vendor metadata so webhooks can be routed."""
    PROVIDER = "provider"
    BOOKING = "booking"
    NOTIFICATION = "notification"


class CustomPrompt(BaseModel):
    """Optional override of the assistant's scripted prompts."""
    system_prompt: str
    first_message: str
    closing_script: Optional[str] = None


class CallRequest(BaseModel):
    """Everything needed to place one call."""
    provider_name: str
    provider_phone: str  # E.164
    service_needed: str
    user_criteria: str = ""
    location: str = ""
    urgency: Urgency = Urgency.WITHIN_2_DAYS
    problem_description: Optional[str] = None
    client_name: Optional[str] = None
    client_address: Optional[str] = None
    service_request_id: Optional[str] = None
    provider_id: Optional[str] = None
    custom_prompt: Optional[CustomPrompt] = None
    call_kind: CallKind = CallKind.PROVIDER
    preferred_datetime: Optional[str] = None


class StructuredCallData(BaseModel):
    """Structured analysis the vendor extracts from the conversation."""
    model_config = ConfigDict(extra="allow")

    availability: str = "unclear"  # available | unavailable | callback_requested | unclear
    earliest_availability: Optional[str] = None
    estimated_rate: Optional[str] = None
    single_person_found: bool = False
    technician_name: Optional[str] = None
    all_criteria_met: bool = False
    criteria_details: dict[str, bool] = Field(default_factory=dict)
    call_outcome: Optional[str] = None  # positive | negative | neutral | no_answer | voicemail
    recommended: bool = False
    disqualified: bool = False
    disqualification_reason: Optional[str] = None
    notes: Optional[str] = None

    # Booking calls
    booking_confirmed: Optional[bool] = None
    confirmed_date: Optional[str] = None
    confirmed_time: Optional[str] = None
    confirmation_number: Optional[str] = None

    # Notification calls
    selected_provider: Optional[int] = None


class CallAnalysis(BaseModel):
    summary: str = ""
    structured_data: StructuredCallData = Field(default_factory=StructuredCallData)
    success_evaluation: str = ""


class ProviderEcho(BaseModel):
    name: str = "Unknown Provider"
    phone: str = ""
    service: str = ""
    location: str = ""


class RequestEcho(BaseModel):
    criteria: str = ""
    urgency: str = Urgency.FLEXIBLE.value


class CallResult(BaseModel):
    """
    Normalized result of one call, whichever path produced it.

    Every failure path still yields one of these, with `status` describing the
    failure, so the reconciler always has something to persist.
    """
    status: CallResultStatus
    call_id: str = ""
    call_method: CallMethod = CallMethod.DIRECT_VAPI
    call_kind: CallKind = CallKind.PROVIDER
    duration: float = 0.0  # minutes
    ended_reason: str = "unknown"
    transcript: str = ""
    analysis: CallAnalysis = Field(default_factory=CallAnalysis)
    provider: ProviderEcho = Field(default_factory=ProviderEcho)
    request: RequestEcho = Field(default_factory=RequestEcho)
    cost: Optional[float] = None
    error: Optional[str] = None
    messages: list[dict[str, Any]] = Field(default_factory=list)

    # Webhook enrichment bookkeeping
    data_status: Optional[DataStatus] = None
    webhook_received_at: Optional[str] = None
    fetched_at: Optional[str] = None
    fetch_attempts: int = 0
    fetch_error: Optional[str] = None

    @property
    def structured(self) -> StructuredCallData:
        return self.analysis.structured_data


class ProviderCandidate(BaseModel):
    """A business found by research, before it is persisted."""
    name: str
    phone: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None
    source_id: Optional[str] = None


class ResearchResult(BaseModel):
    status: str = "success"  # success | error
    method: str = "places"  # places | kestra
    providers: list[ProviderCandidate] = Field(default_factory=list)
    error: Optional[str] = None


def error_result(
    error: Any,
    request: Optional[CallRequest] = None,
    *,
    status: CallResultStatus = CallResultStatus.ERROR,
    call_id: str = "",
    call_method: CallMethod = CallMethod.DIRECT_VAPI,
    ended_reason: Optional[str] = None,
) -> CallResult:
    """Build a well-formed failure result (error or timeout) for a request."""
    message = str(error) if error else "Unknown error"
    provider = ProviderEcho()
    echo = RequestEcho()
    kind = CallKind.PROVIDER
    if request is not None:
        provider = ProviderEcho(
            name=request.provider_name,
            phone=request.provider_phone,
            service=request.service_needed,
            location=request.location,
        )
        echo = RequestEcho(criteria=request.user_criteria, urgency=request.urgency.value)
        kind = request.call_kind

    return CallResult(
        status=status,
        call_id=call_id,
        call_method=call_method,
        call_kind=kind,
        ended_reason=ended_reason or ("timeout" if status == CallResultStatus.TIMEOUT else "api_error"),
        analysis=CallAnalysis(
            structured_data=StructuredCallData(
                call_outcome="no_answer",
                disqualified=True,
                disqualification_reason=message,
                notes=message,
            ),
        ),
        provider=provider,
        request=echo,
        error=message,
    )


# ----------------------------------------------------------------------
# API bodies (camelCase on the wire)
# ----------------------------------------------------------------------


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DirectContact(ApiModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=7)


class ServiceRequestCreate(ApiModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    criteria: str = ""
    location: str = Field(min_length=1, max_length=255)
    urgency: Urgency = Urgency.WITHIN_2_DAYS
    type: RequestType = RequestType.RESEARCH_AND_BOOK
    user_name: Optional[str] = None
    user_phone: Optional[str] = None
    preferred_contact: ContactChannel = ContactChannel.TEXT
    direct_contact: Optional[DirectContact] = None
    min_rating: float = Field(default=4.0, ge=0, le=5)
    max_providers: int = Field(default=10, ge=1, le=20)
    auto_start: bool = True


class ProviderCallBody(ApiModel):
    provider_name: str = Field(min_length=1)
    provider_phone: str = Field(min_length=7)
    service_needed: str = Field(min_length=1)
    user_criteria: str = ""
    location: str = ""
    urgency: Urgency = Urgency.WITHIN_2_DAYS
    problem_description: Optional[str] = None
    client_name: Optional[str] = None
    service_request_id: Optional[str] = None
    provider_id: Optional[str] = None
    custom_prompt: Optional[CustomPrompt] = None


class BatchProvider(ApiModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=7)
    id: Optional[str] = None


class BatchCallBody(ApiModel):
    providers: list[BatchProvider] = Field(min_length=1)
    service_needed: str = Field(min_length=1)
    user_criteria: str = ""
    location: str = ""
    urgency: Urgency = Urgency.WITHIN_2_DAYS
    service_request_id: Optional[str] = None
    max_concurrent: Optional[int] = Field(default=None, ge=1, le=10)


class RecommendBody(ApiModel):
    service_request_id: str = Field(min_length=1)


class ScheduleBody(ApiModel):
    service_request_id: str = Field(min_length=1)
    provider_id: str = Field(min_length=1)
    preferred_date_time: Optional[str] = None
    customer_name: Optional[str] = None
    customer_address: Optional[str] = None

    def preferences(self) -> dict:
        return {
            "preferred_datetime": self.preferred_date_time,
            "customer_name": self.customer_name,
            "customer_address": self.customer_address,
        }


class NotifyBody(ApiModel):
    service_request_id: str = Field(min_length=1)
    preferred_contact: Optional[ContactChannel] = None
