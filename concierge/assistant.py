"""
Assistant configurations sent to the voice vendor with each outbound call.

Four call flavours share the same voice/transcriber settings and differ in the
system prompt and the structured-data schema the vendor extracts afterwards:
provider screening, direct tasks, booking callbacks and user notifications.
"""

from typing import Any, Optional

from concierge.models import CallKind, CallRequest

VOICE = {
    "provider": "11labs",
    "voiceId": "21m00Tcm4TlvDq8ikWAM",
    "stability": 0.5,
    "similarityBoost": 0.75,
}

TRANSCRIBER = {"provider": "deepgram", "language": "en"}

VOICEMAIL_DETECTION = {
    "provider": "twilio",
    "enabled": True,
    "machineDetectionTimeout": 10,
    "machineDetectionSpeechThreshold": 2500,
    "machineDetectionSpeechEndThreshold": 1200,
}

MODEL = {"provider": "google", "model": "gemini-2.5-flash", "temperature": 0.15}

DEFAULT_END_CALL_MESSAGE = "Thank you so much for your time. Have a wonderful day!"

# Marker for request types that skip research and call a user-given contact
DIRECT_TASK_SERVICE = "Direct Task"

VOICEMAIL_RULES = """## Voicemail
If you hear a voicemail greeting ("leave a message", "you have reached", a beep,
or a long automated greeting), invoke endCall immediately. Never leave a message."""

END_CALL_RULES = """## Ending the call
You have an endCall tool. After your closing statement, invoke endCall right away.
Do not wait for the other side to hang up."""

SPEECH_RULES = """## Speech
- Never start sentences with "Okay", "So", "Well", "Alright" or "Um"
- Ask one question at a time and wait for the answer
- Never invent names, addresses or facts you were not given"""

PROVIDER_PROMPT = """You are {client_name}'s personal AI concierge making a real phone call to {provider_name}.
{client_name} needs {service} services in {location}, {urgency}.

## What to find out
1. Availability: are they available {urgency}? If yes, get their soonest specific date and time.
2. Rates: what would the rate be for this type of work?
3. Requirements, one at a time, always about THE SAME technician:
{criteria}

{address_section}

If they ask for details you do not have, explain you are only checking availability
and rates; {client_name} will provide everything when we call back to book.

## Disqualification
If they cannot meet a requirement, are not available or do not do this work, thank
them warmly and end the call without mentioning a callback.

## Closing
If everything checks out: "Thank you so much! I'll share this with {client_name} and
if they'd like to proceed, we'll call back to schedule." Then end the call.

{speech}

{voicemail}

{end_call}"""

DIRECT_TASK_PROMPT = """You are a confident, polite AI assistant calling {provider_name} on behalf of your client.

## Your task
{task}

You are performing this task directly, not shopping for a provider. State the purpose
clearly, stay firm but friendly if they push back, and collect any confirmation
numbers, names, amounts or next steps. Summarize the outcome before closing.

{speech}

{voicemail}

{end_call}"""

BOOKING_PROMPT = """You are an AI assistant calling {provider_name} back to schedule an appointment.
They were contacted earlier about {service} and your client has chosen them.

## Appointment details
- Service: {service}
- Location: {location}
- Preferred time: {preferred}
- Client name: {client_name}

Ask for the preferred time first; if it is not available, accept the closest time they
offer. Confirm the date, time and address, and ask for a confirmation number.
If they cannot book, thank them and end the call.

{speech}

{voicemail}

{end_call}"""

NOTIFICATION_PROMPT = """You are AI Concierge calling {user_name} about their {service} request in {location}.

## Providers (in order of recommendation)
{providers}

{overall}

Lead with the top recommendation and why it was chosen, briefly mention the others,
answer questions from the details above, then ask the user to choose 1, 2 or 3.
Confirm their choice, thank them, and end the call.

{end_call}"""

PROVIDER_SCHEMA = {
    "type": "object",
    "properties": {
        "availability": {
            "type": "string",
            "enum": ["available", "unavailable", "callback_requested", "unclear"],
        },
        "earliest_availability": {
            "type": "string",
            "description": "Specific date/time the provider can come out (e.g. 'Tomorrow at 2pm')",
        },
        "estimated_rate": {"type": "string"},
        "single_person_found": {
            "type": "boolean",
            "description": "Did we find ONE person with ALL required qualities?",
        },
        "technician_name": {"type": "string"},
        "all_criteria_met": {"type": "boolean"},
        "criteria_details": {"type": "object"},
        "disqualified": {"type": "boolean"},
        "disqualification_reason": {"type": "string"},
        "call_outcome": {
            "type": "string",
            "enum": ["positive", "negative", "neutral", "no_answer", "voicemail"],
        },
        "recommended": {"type": "boolean"},
        "notes": {"type": "string"},
    },
    "required": ["availability", "single_person_found", "all_criteria_met", "call_outcome"],
}

DIRECT_TASK_SCHEMA = {
    "type": "object",
    "properties": {
        "task_completed": {"type": "boolean"},
        "outcome": {"type": "string", "enum": ["success", "partial", "failed", "needs_followup"]},
        "resolution_details": {"type": "string"},
        "next_steps": {"type": "string"},
        "contact_name": {"type": "string"},
        "call_outcome": {
            "type": "string",
            "enum": ["positive", "negative", "neutral", "no_answer", "voicemail"],
        },
        "notes": {"type": "string"},
    },
    "required": ["task_completed", "outcome"],
}

BOOKING_SCHEMA = {
    "type": "object",
    "properties": {
        "booking_confirmed": {"type": "boolean"},
        "confirmed_date": {"type": "string"},
        "confirmed_time": {"type": "string"},
        "confirmation_number": {"type": "string"},
        "special_instructions": {"type": "string"},
        "booking_failure_reason": {"type": "string"},
        "call_outcome": {
            "type": "string",
            "enum": ["booked", "rescheduling_needed", "declined", "voicemail", "wrong_number", "no_answer"],
        },
        "notes": {"type": "string"},
    },
    "required": ["booking_confirmed", "call_outcome"],
}

NOTIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "selected_provider": {
            "type": "number",
            "description": "The provider number the user selected (1, 2 or 3), if any",
        },
        "call_outcome": {
            "type": "string",
            "enum": ["selected", "no_selection", "declined_all", "wants_callback", "voicemail"],
        },
        "decision_factors": {"type": "string"},
    },
    "required": ["call_outcome"],
}


def is_direct_task(request: CallRequest) -> bool:
    return request.service_needed == DIRECT_TASK_SERVICE


def _analysis_plan(summary: str, schema: dict, structured_prompt: str) -> dict:
    return {
        "summaryPlan": {"enabled": True, "messages": [{"role": "system", "content": summary}]},
        "structuredDataPlan": {
            "enabled": True,
            "schema": schema,
            "messages": [{"role": "system", "content": structured_prompt}],
        },
    }


def _assistant(name: str, system_prompt: str, first_message: str, analysis_plan: dict, **extra) -> dict:
    return {
        "name": name,
        "voice": dict(VOICE),
        "model": {
            **MODEL,
            "messages": [{"role": "system", "content": system_prompt}],
            "tools": [{"type": "endCall"}],
        },
        "transcriber": dict(TRANSCRIBER),
        "voicemailDetection": dict(VOICEMAIL_DETECTION),
        "firstMessage": first_message,
        "endCallFunctionEnabled": True,
        "endCallMessage": extra.pop("end_call_message", DEFAULT_END_CALL_MESSAGE),
        "silenceTimeoutSeconds": extra.pop("silence_timeout", 20),
        "analysisPlan": analysis_plan,
        **extra,
    }


def provider_assistant(request: CallRequest) -> dict:
    """Screening call: availability, rates and the client's requirements."""
    client_name = request.client_name or "my client"

    if request.custom_prompt is not None:
        system_prompt = f"{request.custom_prompt.system_prompt}\n\n{VOICEMAIL_RULES}\n\n{END_CALL_RULES}"
        first_message = request.custom_prompt.first_message
    else:
        if request.client_address:
            address_section = f"The service address is {request.client_address}; you may share it."
        else:
            address_section = (
                f"You only know the general area ({request.location}), not a street address. "
                f"Never present {request.location} as an address."
            )
        system_prompt = PROVIDER_PROMPT.format(
            client_name=client_name,
            provider_name=request.provider_name,
            service=request.service_needed,
            location=request.location,
            urgency=request.urgency.value.replace("_", " "),
            criteria=request.user_criteria or "(no specific requirements)",
            address_section=address_section,
            speech=SPEECH_RULES,
            voicemail=VOICEMAIL_RULES,
            end_call=END_CALL_RULES,
        )
        problem = f" {client_name} {request.problem_description}." if request.problem_description else ""
        first_message = (
            f"Hi there! This is {client_name}'s personal AI assistant calling to check on "
            f"{request.service_needed} services.{problem} Do you have just a quick moment?"
        )

    return _assistant(
        "Concierge",
        system_prompt,
        first_message,
        _analysis_plan(
            f"Summarize: was ONE person found with ALL required qualities? What are their rates "
            f"and soonest availability? Does the provider meet all of {client_name}'s requirements?",
            PROVIDER_SCHEMA,
            f"Analyze this call. {client_name} needed ONE person with ALL of:\n{request.user_criteria}\n"
            "Was the provider disqualified, and if so why?",
        ),
        end_call_message=(request.custom_prompt.closing_script if request.custom_prompt else None)
        or DEFAULT_END_CALL_MESSAGE,
    )


def direct_task_assistant(request: CallRequest) -> dict:
    """The assistant performs a task (complaint, negotiation, cancellation) for the user."""
    if request.custom_prompt is not None:
        system_prompt = f"{request.custom_prompt.system_prompt}\n\n{END_CALL_RULES}"
        first_message = request.custom_prompt.first_message
    else:
        system_prompt = DIRECT_TASK_PROMPT.format(
            provider_name=request.provider_name,
            task=request.user_criteria,
            speech=SPEECH_RULES,
            voicemail=VOICEMAIL_RULES,
            end_call=END_CALL_RULES,
        )
        first_message = (
            f"Hi there! This is an AI assistant calling on behalf of my client regarding "
            f"{request.provider_name}. Do you have just a moment?"
        )

    return _assistant(
        "DirectTask",
        system_prompt,
        first_message,
        _analysis_plan(
            f"Summarize the outcome of this call. The task was: {request.user_criteria}. "
            "Was it successful? Any confirmations or next steps?",
            DIRECT_TASK_SCHEMA,
            f"The task was: {request.user_criteria}. Was it completed, and with what outcome?",
        ),
    )


def booking_assistant(request: CallRequest) -> dict:
    """Callback to a chosen provider to schedule the appointment."""
    client_name = request.client_name or "my client"
    system_prompt = BOOKING_PROMPT.format(
        provider_name=request.provider_name,
        service=request.service_needed,
        location=request.client_address or request.location,
        preferred=request.preferred_datetime or "as soon as possible",
        client_name=client_name,
        speech=SPEECH_RULES,
        voicemail=VOICEMAIL_RULES,
        end_call=END_CALL_RULES,
    )
    return _assistant(
        "Booking",
        system_prompt,
        f"Hi there! This is the AI assistant that called earlier about {request.service_needed}. "
        "My client has decided to go with you, and I'm calling to schedule the appointment. "
        "Do you have a quick moment?",
        _analysis_plan(
            "Summarize this booking call. Was the appointment scheduled? What date and time, "
            "and was a confirmation number given?",
            BOOKING_SCHEMA,
            "Was the appointment confirmed? What date and time? Any confirmation number? If it failed, why?",
        ),
    )


def notification_assistant(
    user_name: Optional[str],
    service: str,
    location: str,
    recommendations: list[dict[str, Any]],
    overall_recommendation: Optional[str] = None,
) -> dict:
    """Call to the user that reads out the top providers and captures a 1/2/3 choice."""
    lines = []
    for index, rec in enumerate(recommendations, start=1):
        entry = [f"{index}. {rec.get('providerName', 'Provider')}"]
        if rec.get("rating"):
            rating = f"{rec['rating']:.1f} stars"
            if rec.get("reviewCount"):
                rating += f" from {rec['reviewCount']} reviews"
            entry.append(f"   Rating: {rating}")
        if rec.get("earliestAvailability"):
            entry.append(f"   Availability: {rec['earliestAvailability']}")
        if rec.get("estimatedRate"):
            entry.append(f"   Estimated rate: {rec['estimatedRate']}")
        if rec.get("reasoning"):
            entry.append(f"   Why: {rec['reasoning']}")
        lines.append("\n".join(entry))

    system_prompt = NOTIFICATION_PROMPT.format(
        user_name=user_name or "the customer",
        service=service,
        location=location,
        providers="\n\n".join(lines),
        overall=f"## Summary\n{overall_recommendation}" if overall_recommendation else "",
        end_call=END_CALL_RULES,
    )
    return _assistant(
        "Concierge-UserNotification",
        system_prompt,
        f"Hi {user_name or 'there'}! This is AI Concierge calling about your {service} request. "
        f"Great news, I've researched providers in {location} and found some excellent options for you!",
        _analysis_plan(
            "Summarize which provider was selected, if any, and what influenced the decision.",
            NOTIFICATION_SCHEMA,
            "Which option (1, 2 or 3) did the user select, if any?",
        ),
        end_call_message="Thanks for using AI Concierge! Goodbye!",
        silence_timeout=15,
        maxDurationSeconds=180,
    )


def build_assistant(request: CallRequest) -> dict:
    if request.call_kind == CallKind.BOOKING:
        return booking_assistant(request)
    if is_direct_task(request):
        return direct_task_assistant(request)
    return provider_assistant(request)


def call_metadata(request: CallRequest) -> dict:
    """Identifiers the webhook needs to join an asynchronous result back to its rows."""
    return {
        "serviceRequestId": request.service_request_id or "",
        "providerId": request.provider_id or "",
        "providerName": request.provider_name,
        "serviceNeeded": request.service_needed,
        "location": request.location,
        "userCriteria": request.user_criteria,
        "urgency": request.urgency.value,
        "callKind": request.call_kind.value,
    }


def build_call_payload(
    request: CallRequest,
    *,
    phone_number_id: str,
    dial_number: str,
    webhook_url: Optional[str] = None,
    assistant: Optional[dict] = None,
) -> dict:
    """Full call-create body. With a webhook URL the vendor posts end-of-call reports back to us."""
    assistant = dict(assistant) if assistant is not None else build_assistant(request)
    payload = {
        "phoneNumberId": phone_number_id,
        "customer": {"number": dial_number, "name": request.provider_name},
        "assistant": assistant,
    }
    if webhook_url:
        metadata = call_metadata(request)
        assistant["server"] = {"url": webhook_url, "timeoutSeconds": 20}
        assistant["serverMessages"] = ["status-update", "end-of-call-report"]
        assistant["metadata"] = metadata
        payload["metadata"] = metadata
    return payload
