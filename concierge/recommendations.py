"""
Recommendation scorer.

Deterministic additive scoring (100 points max) over finished provider calls:

- Conversation quality: 35 points
- Service fit: 30 points
- Provider reputation: 25 points
- Trust signal: 10 points

Only providers whose call completed and who engaged with the assistant are
scored. Equal scores keep the order the calls were given in.
"""

import re
from typing import List, Optional

from pydantic import BaseModel, Field

from concierge.db_models import DBProvider, ProviderCallStatus
from concierge.logging_config import get_logger
from concierge.models import ApiModel, CallAnalysis, CallResult, CallResultStatus, StructuredCallData

logger = get_logger(__name__)

TOP_N = 3
STRONG_LEAD = 15
UNSPECIFIED_RATES = {"", "unknown", "Quote upon request"}
NOT_REACHED_OUTCOMES = {"no_answer", "voicemail"}
# Summaries that describe the user's request rather than the provider
USER_FOCUSED_MARKERS = ("information gathered for", "looking for", "here's the summary")
_SENTENCE_END = re.compile(r"[.!?]+")

SCORING_NOTE = (
    "Recommendations generated using multi-objective scoring based on call quality, "
    "service fit, and provider reputation."
)


class ProviderCall(BaseModel):
    """One provider's static reputation data plus the result of calling it."""
    provider_id: Optional[str] = None
    name: str
    phone: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    result: CallResult


class ProviderRecommendation(ApiModel):
    provider_id: Optional[str] = None
    provider_name: str
    phone: str = ""
    rating: Optional[float] = None
    review_count: Optional[int] = None
    score: int
    reasoning: str
    criteria_matched: List[str] = Field(default_factory=list)
    earliest_availability: str = "Contact for availability"
    estimated_rate: str = "Quote upon request"


class RecommendationStats(ApiModel):
    total_calls: int = 0
    qualified_providers: int = 0
    disqualified_providers: int = 0
    failed_calls: int = 0


class RecommendationResponse(ApiModel):
    recommendations: List[ProviderRecommendation] = Field(default_factory=list)
    overall_recommendation: str
    analysis_notes: str = ""
    stats: RecommendationStats = Field(default_factory=RecommendationStats)

    def to_payload(self) -> dict:
        """JSON shape stored on the request and read by the notification paths."""
        return self.model_dump(by_alias=True, mode="json")


def provider_call_from_row(provider: DBProvider) -> ProviderCall:
    """Rebuild a scorer input from a persisted provider row."""
    payload = provider.call_result or {}
    if provider.call_status is not None and provider.call_status.is_terminal:
        status = CallResultStatus(provider.call_status.value)
    else:
        # Not finished (or never called); never qualifies
        status = CallResultStatus.ERROR
    if provider.call_status == ProviderCallStatus.BOOKING_IN_PROGRESS:
        status = CallResultStatus.COMPLETED

    structured = StructuredCallData.model_validate(payload.get("structured_data") or {})
    result = CallResult(
        status=status,
        call_id=provider.call_id or "",
        ended_reason=payload.get("ended_reason") or "unknown",
        transcript=provider.call_transcript or "",
        duration=provider.call_duration_minutes or 0.0,
        analysis=CallAnalysis(
            summary=provider.call_summary or payload.get("summary") or "",
            structured_data=structured,
            success_evaluation=payload.get("success_evaluation") or "",
        ),
        error=payload.get("error"),
    )
    return ProviderCall(
        provider_id=provider.id,
        name=provider.name,
        phone=provider.phone or "",
        rating=provider.rating,
        review_count=provider.review_count,
        result=result,
    )


def is_qualified(call: ProviderCall) -> bool:
    """Hard filters applied before scoring."""
    data = call.result.structured
    if not data.call_outcome:
        logger.debug("recommendation_excluded", provider=call.name, reason="missing call outcome")
        return False
    if call.result.status != CallResultStatus.COMPLETED:
        logger.debug("recommendation_excluded", provider=call.name, reason=f"call {call.result.status.value}")
        return False
    if data.call_outcome in NOT_REACHED_OUTCOMES:
        logger.debug("recommendation_excluded", provider=call.name, reason=data.call_outcome)
        return False
    if data.disqualified:
        logger.debug(
            "recommendation_excluded",
            provider=call.name,
            reason=f"disqualified: {data.disqualification_reason}",
        )
        return False
    return True


def _has_availability(data: StructuredCallData) -> bool:
    return bool(data.earliest_availability) and data.earliest_availability != "unknown"


def _has_rate(data: StructuredCallData) -> bool:
    return bool(data.estimated_rate) and data.estimated_rate not in UNSPECIFIED_RATES


def _rating_points(rating: float) -> int:
    if rating >= 4.5:
        return 20
    if rating >= 4.0:
        return 16
    if rating >= 3.5:
        return 12
    if rating >= 3.0:
        return 8
    if rating > 0:
        return 4
    return 0


def _review_points(reviews: int) -> int:
    if reviews >= 100:
        return 5
    if reviews >= 50:
        return 4
    if reviews >= 20:
        return 3
    if reviews >= 10:
        return 2
    if reviews > 0:
        return 1
    return 0


def calculate_score(call: ProviderCall) -> int:
    data = call.result.structured
    score = 0

    # Conversation quality
    if data.call_outcome == "positive":
        score += 20
    elif data.call_outcome == "neutral":
        score += 10
    if _has_availability(data):
        score += 8
    if _has_rate(data):
        score += 7

    # Service fit
    if data.all_criteria_met:
        score += 20
    if data.availability == "available":
        score += 7
    elif data.availability == "callback_requested":
        score += 3
    if data.single_person_found:
        score += 3

    # Reputation
    score += _rating_points(call.rating or 0)
    score += _review_points(call.review_count or 0)

    # Trust signal
    if data.recommended:
        score += 10

    return min(round(score), 100)


def summary_insights(summary: str, limit: int = 2) -> List[str]:
    """Short sentences from the call summary that add something the other phrases don't."""
    if not summary or len(summary) <= 10:
        return []
    lowered = summary.lower()
    if any(marker in lowered for marker in USER_FOCUSED_MARKERS):
        return []

    insights = []
    for sentence in _SENTENCE_END.split(summary):
        sentence = sentence.strip()
        if len(sentence) <= 10:
            continue
        if "available" in sentence.lower() or "rating" in sentence.lower():
            continue
        insights.append(sentence)
        if len(insights) >= limit:
            break
    return insights


def build_reasoning(call: ProviderCall) -> str:
    data = call.result.structured
    parts = []

    if data.all_criteria_met:
        parts.append("✓ Meets all your requirements")
    elif data.call_outcome == "positive":
        parts.append("Positive conversation")

    if _has_availability(data):
        parts.append(f"Available: {data.earliest_availability}")
    elif data.availability == "available":
        parts.append("Available now")

    if call.rating and call.rating >= 3.5:
        reviews = f" ({call.review_count} reviews)" if call.review_count else ""
        parts.append(f"{call.rating}★{reviews}")

    if _has_rate(data):
        parts.append(f"Quoted: {data.estimated_rate}")

    parts.extend(summary_insights(call.result.analysis.summary))

    return " • ".join(parts) if parts else "Provider contacted successfully"


def _recommend(call: ProviderCall) -> ProviderRecommendation:
    data = call.result.structured
    if data.all_criteria_met:
        matched = ["All criteria met"]
    elif data.call_outcome == "positive":
        matched = ["Positive response"]
    else:
        matched = []
    return ProviderRecommendation(
        provider_id=call.provider_id,
        provider_name=call.name,
        phone=call.phone,
        rating=call.rating,
        review_count=call.review_count,
        score=calculate_score(call),
        reasoning=build_reasoning(call),
        criteria_matched=matched,
        earliest_availability=data.earliest_availability or "Contact for availability",
        estimated_rate=data.estimated_rate or "Quote upon request",
    )


def build_overall_recommendation(recommendations: List[ProviderRecommendation]) -> str:
    top = recommendations[0]
    lead = "Based on our research and phone calls, we"
    if len(recommendations) == 1:
        return (
            f"{lead} recommend **{top.provider_name}** (Score: {top.score}/100). "
            "They were the only provider who answered and could meet your needs."
        )
    if top.score - recommendations[1].score >= STRONG_LEAD:
        return (
            f"{lead} strongly recommend **{top.provider_name}** (Score: {top.score}/100). "
            "They significantly outperformed other options in availability, service fit, and reputation."
        )
    alternatives = len(recommendations) - 1
    return (
        f"{lead} recommend **{top.provider_name}** (Score: {top.score}/100) as your top choice. "
        f"We've included {alternatives} alternative{'s' if alternatives > 1 else ''} for comparison."
    )


def _no_qualified_message(calls: List[ProviderCall]) -> str:
    not_reached = sum(1 for c in calls if c.result.structured.call_outcome in NOT_REACHED_OUTCOMES)
    message = "Unfortunately, we couldn't find a qualified provider. "
    if not_reached:
        message += f"{not_reached} provider{'s' if not_reached > 1 else ''} didn't answer our calls. "
    return message + "Please review the call logs for details, or try expanding your search criteria."


def generate_recommendations(calls: List[ProviderCall]) -> RecommendationResponse:
    """
    Score every qualified provider and keep the top three.

    Never raises on empty or all-failed input; the response then carries no
    recommendations and an explanatory overall message.
    """
    qualified = [c for c in calls if is_qualified(c)]
    stats = RecommendationStats(
        total_calls=len(calls),
        qualified_providers=len(qualified),
        disqualified_providers=len(calls) - len(qualified),
        failed_calls=sum(
            1 for c in calls if c.result.status in (CallResultStatus.ERROR, CallResultStatus.TIMEOUT)
        ),
    )

    if not qualified:
        logger.info("recommendations_empty", **stats.model_dump())
        return RecommendationResponse(
            overall_recommendation=_no_qualified_message(calls),
            analysis_notes="Consider expanding your search criteria or trying additional providers.",
            stats=stats,
        )

    # sorted() is stable: equal scores keep input order
    scored = sorted((_recommend(c) for c in qualified), key=lambda r: r.score, reverse=True)
    top = scored[:TOP_N]

    logger.info(
        "recommendations_generated",
        top_provider=top[0].provider_name,
        top_score=top[0].score,
        **stats.model_dump(),
    )
    return RecommendationResponse(
        recommendations=top,
        overall_recommendation=build_overall_recommendation(top),
        analysis_notes=SCORING_NOTE,
        stats=stats,
    )
