"""
Provider research.

Text search against the Google Places API, or delegation to the workflow
engine's research flow when it is enabled.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from concierge.errors import VendorError
from concierge.http import request_json
from concierge.kestra_client import WorkflowEngineClient
from concierge.logging_config import get_logger
from concierge.models import ProviderCandidate, ResearchResult
from concierge.phone import normalize_phone_to_e164

logger = get_logger(__name__)

FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.rating",
    "places.userRatingCount",
    "places.businessStatus",
    "places.nationalPhoneNumber",
    "places.internationalPhoneNumber",
])


def candidate_from_place(place: dict) -> ProviderCandidate:
    phone = place.get("internationalPhoneNumber") or place.get("nationalPhoneNumber")
    return ProviderCandidate(
        name=(place.get("displayName") or {}).get("text") or "Unknown",
        phone=normalize_phone_to_e164(phone),
        rating=place.get("rating"),
        review_count=place.get("userRatingCount"),
        address=place.get("formattedAddress"),
        source_id=place.get("id"),
    )


class ResearchService:
    """Finds candidate providers for a service in a location."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str = "",
        base_url: str = "https://places.googleapis.com/v1",
        workflow: Optional[WorkflowEngineClient] = None,
        kestra_strict: bool = True,
        max_retries: int = 2,
        backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._http = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.workflow = workflow
        self.kestra_strict = kestra_strict
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep

    async def research(
        self,
        service: str,
        location: str,
        min_rating: float = 4.0,
        max_results: int = 10,
    ) -> ResearchResult:
        """
        Search for providers.

        Only providers with a dialable phone and a rating of at least
        `min_rating` (unrated providers are kept) are returned.
        """
        logger.info("research_started", service=service, location=location, kestra=self.workflow is not None)

        if self.workflow is not None and await self.workflow.ensure_available(self.kestra_strict):
            result = await self.workflow.research(service, location, min_rating, max_results)
        else:
            result = await self._search_places(service, location, max_results)

        if result.status == "success":
            result = result.model_copy(update={
                "providers": self._filter(result.providers, min_rating)[:max_results],
            })

        logger.info(
            "research_finished",
            service=service,
            method=result.method,
            status=result.status,
            providers=len(result.providers),
        )
        return result

    async def _search_places(self, service: str, location: str, max_results: int) -> ResearchResult:
        if not self.api_key:
            return ResearchResult(status="error", error="Places API key is not configured")

        try:
            data = await request_json(
                self._http,
                "POST",
                f"{self.base_url}/places:searchText",
                vendor="Places",
                headers={"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": FIELD_MASK},
                json={"textQuery": f"{service} in {location}", "maxResultCount": min(max(max_results * 2, 1), 20)},
                max_retries=self._max_retries,
                backoff=self._backoff,
                sleep=self._sleep,
            )
        except VendorError as e:
            logger.error("places_search_failed", service=service, location=location, error=str(e))
            return ResearchResult(status="error", error=str(e))

        places = [p for p in data.get("places", []) if p.get("businessStatus", "OPERATIONAL") == "OPERATIONAL"]
        return ResearchResult(status="success", method="places", providers=[candidate_from_place(p) for p in places])

    @staticmethod
    def _filter(providers: list[ProviderCandidate], min_rating: float) -> list[ProviderCandidate]:
        kept = []
        for provider in providers:
            phone = normalize_phone_to_e164(provider.phone)
            if phone is None:
                continue
            if provider.rating is not None and provider.rating < min_rating:
                continue
            kept.append(provider.model_copy(update={"phone": phone}))
        return kept
