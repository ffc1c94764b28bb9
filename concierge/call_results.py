"""
Mapping of vendor call payloads into CallResult.

The vendor delivers the same call object through three channels (the
call-get endpoint, the end-of-call webhook and the workflow engine's output)
and all of them are normalized here.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from concierge.logging_config import get_logger
from concierge.models import (
    CallAnalysis,
    CallKind,
    CallMethod,
    CallRequest,
    CallResult,
    CallResultStatus,
    DataStatus,
    ProviderEcho,
    RequestEcho,
    StructuredCallData,
)

logger = get_logger(__name__)

# Vendor call states that mean the call is still running
ACTIVE_VENDOR_STATES = {"queued", "ringing", "in-progress", "forwarding"}

# Transcripts shorter than this are treated as "not ready yet"
MIN_TRANSCRIPT_CHARS = 50

_NOT_REACHED_MARKERS = ("voicemail", "no-answer", "no_answer", "did-not-answer", "busy")
_FAILURE_MARKERS = ("error", "failed", "pipeline-")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_call_active(call: dict) -> bool:
    return call.get("status") in ACTIVE_VENDOR_STATES


def status_from_ended_reason(vendor_status: Optional[str], ended_reason: Optional[str]) -> CallResultStatus:
    """Map the vendor's end state onto our four outcomes."""
    if vendor_status and vendor_status != "ended":
        return CallResultStatus.ERROR

    reason = (ended_reason or "").lower()
    if any(marker in reason for marker in _NOT_REACHED_MARKERS):
        return CallResultStatus.VOICEMAIL
    if any(marker in reason for marker in _FAILURE_MARKERS):
        return CallResultStatus.ERROR
    return CallResultStatus.COMPLETED


def _transcript_of(call: dict) -> str:
    transcript = call.get("transcript") or (call.get("artifact") or {}).get("transcript") or ""
    if isinstance(transcript, str):
        return transcript
    return json.dumps(transcript)


def _duration_minutes(call: dict) -> float:
    if call.get("durationMinutes") is not None:
        return float(call["durationMinutes"])

    started, ended = call.get("startedAt"), call.get("endedAt")
    if started and ended:
        try:
            start = datetime.fromisoformat(started.replace("Z", "+00:00"))
            end = datetime.fromisoformat(ended.replace("Z", "+00:00"))
        except ValueError:
            return 0.0
        return max((end - start).total_seconds() / 60, 0.0)
    return 0.0


def _cost_of(call: dict) -> Optional[float]:
    cost = call.get("cost")
    if cost is None:
        cost = (call.get("costBreakdown") or {}).get("total")
    return float(cost) if cost is not None else None


def _messages_of(call: dict) -> list[dict]:
    messages = call.get("messages") or (call.get("artifact") or {}).get("messages") or []
    if not isinstance(messages, list):
        return []
    return [
        {
            "role": msg.get("role", "unknown"),
            "message": msg.get("message") or msg.get("content") or "",
            "time": msg.get("time", msg.get("secondsFromStart")),
        }
        for msg in messages
        if isinstance(msg, dict)
    ]


def parse_structured_data(raw: Any, status: CallResultStatus) -> StructuredCallData:
    """Vendor structured data over defaults; malformed fields fall back to defaults."""
    defaults = {
        "call_outcome": "positive" if status == CallResultStatus.COMPLETED else "no_answer",
        "estimated_rate": "unknown",
    }
    if not isinstance(raw, dict):
        return StructuredCallData(**defaults)

    try:
        return StructuredCallData.model_validate({**defaults, **raw})
    except ValidationError as e:
        logger.warning("structured_data_invalid", error=str(e))
        return StructuredCallData(**defaults)


def metadata_of(call: dict) -> dict:
    metadata = call.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def call_kind_of(call: dict) -> CallKind:
    try:
        return CallKind(metadata_of(call).get("callKind", CallKind.PROVIDER.value))
    except ValueError:
        return CallKind.PROVIDER


def transform_vendor_call(
    call: dict,
    request: Optional[CallRequest] = None,
    *,
    call_method: CallMethod = CallMethod.DIRECT_VAPI,
) -> CallResult:
    """Build a CallResult from a vendor call object (API response or webhook body)."""
    status = status_from_ended_reason(call.get("status"), call.get("endedReason"))
    analysis = call.get("analysis") or {}
    metadata = metadata_of(call)
    customer = call.get("customer") or {}

    if request is not None:
        provider = ProviderEcho(
            name=request.provider_name,
            phone=request.provider_phone,
            service=request.service_needed,
            location=request.location,
        )
        echo = RequestEcho(criteria=request.user_criteria, urgency=request.urgency.value)
        kind = request.call_kind
    else:
        provider = ProviderEcho(
            name=metadata.get("providerName") or customer.get("name") or "Unknown Provider",
            phone=customer.get("number") or (call.get("phoneNumber") or {}).get("number") or "",
            service=metadata.get("serviceNeeded") or "",
            location=metadata.get("location") or "",
        )
        echo = RequestEcho(
            criteria=metadata.get("userCriteria") or "",
            urgency=metadata.get("urgency") or "flexible",
        )
        kind = call_kind_of(call)

    return CallResult(
        status=status,
        call_id=call.get("id", ""),
        call_method=call_method,
        call_kind=kind,
        duration=_duration_minutes(call),
        ended_reason=call.get("endedReason") or "unknown",
        transcript=_transcript_of(call),
        analysis=CallAnalysis(
            summary=analysis.get("summary") or call.get("summary") or "",
            structured_data=parse_structured_data(analysis.get("structuredData"), status),
            success_evaluation=str(analysis.get("successEvaluation") or ""),
        ),
        provider=provider,
        request=echo,
        cost=_cost_of(call),
        messages=_messages_of(call),
    )


def has_analysis(call: dict) -> bool:
    analysis = call.get("analysis") or {}
    return bool(analysis.get("summary") or analysis.get("structuredData"))


def is_data_complete(call: dict) -> bool:
    """True once the vendor has finished its asynchronous transcript and analysis."""
    return (
        call.get("status") == "ended"
        and len(_transcript_of(call)) > MIN_TRANSCRIPT_CHARS
        and has_analysis(call)
    )


def merge_call_data(existing: CallResult, call: dict) -> CallResult:
    """
    Merge a fresh vendor call object into an earlier (webhook) result.

    The longer transcript wins; vendor analysis fields override the earlier
    ones; the merged result is marked complete.
    """
    fresh = transform_vendor_call(call, call_method=existing.call_method)
    transcript = fresh.transcript if len(fresh.transcript) > len(existing.transcript) else existing.transcript

    raw_structured = (call.get("analysis") or {}).get("structuredData") or {}
    structured = existing.structured.model_copy(update=raw_structured if isinstance(raw_structured, dict) else {})

    return existing.model_copy(update={
        "transcript": transcript,
        "analysis": CallAnalysis(
            summary=fresh.analysis.summary or existing.analysis.summary,
            structured_data=structured,
            success_evaluation=fresh.analysis.success_evaluation or existing.analysis.success_evaluation,
        ),
        "cost": fresh.cost if fresh.cost is not None else existing.cost,
        "duration": fresh.duration or existing.duration,
        "messages": fresh.messages or existing.messages,
        "data_status": DataStatus.COMPLETE,
        "fetched_at": utcnow_iso(),
    })


def parse_workflow_output(raw: Any, request: CallRequest) -> CallResult:
    """Parse a call result emitted by a workflow-engine script (JSON text or object)."""
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        raise ValueError("Workflow output is not an object")

    status = CallResultStatus(data.get("status", CallResultStatus.ERROR.value))
    analysis = data.get("analysis") or {}
    return CallResult(
        status=status,
        call_id=data.get("callId") or data.get("call_id") or "",
        call_method=CallMethod.KESTRA,
        call_kind=request.call_kind,
        duration=float(data.get("duration") or 0),
        ended_reason=data.get("endedReason") or "unknown",
        transcript=data.get("transcript") or "",
        analysis=CallAnalysis(
            summary=analysis.get("summary") or "",
            structured_data=parse_structured_data(analysis.get("structuredData"), status),
            success_evaluation=str(analysis.get("successEvaluation") or ""),
        ),
        provider=ProviderEcho(
            name=request.provider_name,
            phone=request.provider_phone,
            service=request.service_needed,
            location=request.location,
        ),
        request=RequestEcho(criteria=request.user_criteria, urgency=request.urgency.value),
        cost=data.get("cost"),
        error=data.get("error"),
    )
