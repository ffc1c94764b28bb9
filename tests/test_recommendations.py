from concierge.models import CallRequest, CallResultStatus, error_result
from concierge.recommendations import (
    ProviderCall,
    build_reasoning,
    calculate_score,
    generate_recommendations,
    is_qualified,
    summary_insights,
)

from conftest import make_result, structured


def provider_call(name, rating=None, reviews=None, status=CallResultStatus.COMPLETED, summary="", **data):
    fields = structured(**data)
    return ProviderCall(
        provider_id=f"id-{name}",
        name=name,
        phone="+18645551234",
        rating=rating,
        review_count=reviews,
        result=make_result(status=status, call_id=f"call-{name}", summary=summary, **fields),
    )


def failed_call(name):
    request = CallRequest(provider_name=name, provider_phone="+18645559999", service_needed="Plumber")
    return ProviderCall(provider_id=f"id-{name}", name=name, result=error_result("Invalid number", request))


def test_three_provider_scenario():
    calls = [
        provider_call("Low", rating=4.2, reviews=10),
        failed_call("Broken"),
        provider_call("High", rating=4.8, reviews=120),
    ]

    response = generate_recommendations(calls)

    assert [r.provider_name for r in response.recommendations] == ["High", "Low"]
    assert [r.score for r in response.recommendations] == [100, 93]
    assert response.stats.total_calls == 3
    assert response.stats.qualified_providers == 2
    assert response.stats.disqualified_providers == 1
    assert response.stats.failed_calls == 1
    assert "**High**" in response.overall_recommendation
    assert "1 alternative for comparison" in response.overall_recommendation


def test_payload_uses_camel_case_keys():
    payload = generate_recommendations([provider_call("Only", rating=4.5, reviews=60)]).to_payload()
    first = payload["recommendations"][0]
    assert first["providerName"] == "Only"
    assert first["providerId"] == "id-Only"
    assert "earliestAvailability" in first
    assert payload["stats"]["qualifiedProviders"] == 1
    assert "only provider" in payload["overallRecommendation"]


def test_no_qualified_providers_is_not_an_error():
    calls = [
        failed_call("A"),
        provider_call("B", status=CallResultStatus.VOICEMAIL, call_outcome="voicemail"),
    ]
    response = generate_recommendations(calls)

    assert response.recommendations == []
    assert response.overall_recommendation.startswith("Unfortunately, we couldn't find a qualified provider.")
    assert "2 providers didn't answer" in response.overall_recommendation
    assert response.stats.disqualified_providers == 2


def test_empty_input():
    response = generate_recommendations([])
    assert response.recommendations == []
    assert response.stats.total_calls == 0
    assert response.overall_recommendation


def test_disqualified_and_timed_out_calls_are_excluded():
    assert not is_qualified(provider_call("D", disqualified=True, disqualification_reason="No license"))
    assert not is_qualified(provider_call("T", status=CallResultStatus.TIMEOUT))
    assert not is_qualified(provider_call("N", call_outcome=None))
    assert is_qualified(provider_call("OK"))


def test_top_three_only_and_ties_keep_input_order():
    calls = [provider_call(name, rating=4.0, reviews=20) for name in ("a", "b", "c", "d")]
    response = generate_recommendations(calls)
    assert [r.provider_name for r in response.recommendations] == ["a", "b", "c"]
    assert response.stats.qualified_providers == 4


def test_strong_lead_wording():
    strong = provider_call("Star", rating=4.9, reviews=300)
    weak = provider_call(
        "Meh",
        rating=3.1,
        reviews=2,
        call_outcome="neutral",
        all_criteria_met=False,
        recommended=False,
    )
    response = generate_recommendations([weak, strong])
    assert response.overall_recommendation.startswith("Based on our research and phone calls, we strongly recommend")


def test_score_components():
    bare = provider_call(
        "Bare",
        availability="unclear",
        earliest_availability="unknown",
        estimated_rate="Quote upon request",
        single_person_found=False,
        all_criteria_met=False,
        recommended=False,
        call_outcome="neutral",
    )
    assert calculate_score(bare) == 10
    assert calculate_score(provider_call("Callback", availability="callback_requested")) == 71


def test_reasoning_mentions_key_facts():
    call = provider_call(
        "Ace",
        rating=4.6,
        reviews=88,
        summary="Mike has 20 years of experience. He is available Monday. Pricing is fair and transparent.",
    )
    reasoning = build_reasoning(call)
    assert reasoning.startswith("✓ Meets all your requirements")
    assert "Available: Tomorrow 9am" in reasoning
    assert "4.6★ (88 reviews)" in reasoning
    assert "Quoted: $95/hour" in reasoning
    assert "Mike has 20 years of experience" in reasoning
    assert "available Monday" not in reasoning


def test_summary_insights_skip_user_focused_summaries():
    assert summary_insights("Here's the summary of what the client is looking for.") == []
    assert summary_insights("short") == []
    assert len(summary_insights("First useful sentence. Second useful sentence. Third useful sentence.")) == 2
