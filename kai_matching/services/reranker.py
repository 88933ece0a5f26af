"""
AI re-ranking of a caterer shortlist.

Sends the event request and every candidate to the generative model, validates
the structured answer against RankingResponse and persists one Match per
candidate. Nothing is written until the whole answer has been validated, so a
timeout or a non-conformant answer leaves the store untouched.

The model call is bounded by a timeout and guarded by a circuit breaker. It is
never retried here: every model failure surfaces as a retryable
ModelCallError and the caller decides whether to try again.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from ..core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from ..core.errors import (
    ModelCallError,
    ModelTimeoutError,
    ModelUnavailableError,
    SchemaValidationError,
)
from ..core.observability import get_tracer
from ..core.policy import ScoringPolicy, default_scoring_policy
from ..models.caterer import CatererProfile
from ..models.event_request import EventRequest, RequestStatus
from ..models.match import (
    Match,
    MatchSource,
    MatchStatus,
    OutcomeStatus,
    RankingResponse,
)
from ..repositories.base import EventRequestStore, MatchRepository
from .model_client import GenerativeModel

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

RANKING_SCHEMA_NAME = "caterer_rankings"
DESCRIPTION_PREVIEW_CHARS = 200


@dataclass
class RerankResult:
    status: OutcomeStatus
    matches: list[Match] = field(default_factory=list)
    summary: Optional[str] = None
    total_candidates: int = 0


def _fmt_list(values: list[str]) -> str:
    return ", ".join(values) if values else "Not specified"


def _fmt_money(value: float) -> str:
    return f"R{value:g}"


class AIReRanker:
    """
    Ranks all candidates for a request with a generative model.

    Usage:
        reranker = AIReRanker(model, matches, requests)
        result = await reranker.rank(request, candidates)
    """

    def __init__(
        self,
        model: GenerativeModel,
        matches: MatchRepository,
        requests: EventRequestStore,
        policy: Optional[ScoringPolicy] = None,
        timeout_seconds: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.model = model
        self.matches = matches
        self.requests = requests
        self.policy = policy or default_scoring_policy()
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(name="ranking-model", failure_threshold=5, timeout=60)
        self._schema = RankingResponse.model_json_schema(by_alias=True)

    def build_prompt(self, request: EventRequest, candidates: list[CatererProfile]) -> str:
        location = ", ".join(part for part in (request.city, request.state) if part) or "Not specified"
        lines = [
            "You are an expert catering matchmaker. Analyze this event request and rank the available caterers.",
            "",
            "EVENT REQUEST:",
            f"- Event Type: {request.event_type or 'Not specified'}",
            f"- Guest Count: {request.guest_count}",
            f"- Date: {request.event_date.isoformat() if request.event_date else 'Not specified'}",
            f"- Location: {location}",
            f"- Cuisines Wanted: {_fmt_list(request.cuisines)}",
            f"- Dietary Requirements: {_fmt_list(request.dietary_requirements)}",
            f"- Service Style: {request.service_style or 'Not specified'}",
            f"- Budget: {_fmt_money(request.budget_min)} - {_fmt_money(request.budget_max)}",
            f"- Special Requests: {request.special_requests or 'None'}",
            "",
            "AVAILABLE CATERERS:",
        ]
        for i, c in enumerate(candidates, start=1):
            rating = c.average_rating if c.average_rating is not None else "New"
            lines.extend(
                [
                    "",
                    f"{i}. {c.business_name} (ID: {c.id})",
                    f"   - Cuisines: {_fmt_list(c.cuisines)}",
                    f"   - Services: {_fmt_list(c.service_styles)}",
                    f"   - Capacity: {c.min_guests}-{c.max_guests} guests",
                    f"   - Price: {_fmt_money(c.min_price_per_person)}-{_fmt_money(c.max_price_per_person)}/person",
                    f"   - Rating: {rating}",
                    f"   - Description: {c.description[:DESCRIPTION_PREVIEW_CHARS]}",
                ]
            )
        lines.extend(
            [
                "",
                "Rank ALL caterers by match quality. Consider:",
                "1. Cuisine alignment with request",
                "2. Ability to accommodate dietary requirements",
                "3. Service style match",
                "4. Capacity fit for guest count",
                "5. Price alignment with budget",
                "6. Overall suitability for event type",
                "",
                "Return scores from 0-100 and specific reasons for each ranking. "
                "Use the caterer ID exactly as given for catererId.",
            ]
        )
        return "\n".join(lines)

    async def _generate(self, prompt: str) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.model.generate_json(prompt, self._schema, RANKING_SCHEMA_NAME),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeoutError(
                f"Ranking model did not answer within {self.timeout_seconds}s"
            ) from e

    async def _call_model(self, prompt: str) -> dict[str, Any]:
        try:
            return await self.breaker.call(self._generate, prompt)
        except CircuitBreakerOpenError as e:
            raise ModelUnavailableError(str(e)) from e
        except ModelCallError:
            raise
        except Exception as e:
            raise ModelCallError(f"Ranking model call failed: {e}") from e

    def validate(self, payload: Any, candidates: list[CatererProfile]) -> RankingResponse:
        """
        Check the model answer before anything is persisted.

        Raises:
            SchemaValidationError: Schema violation, or the rankings do not
                cover every candidate exactly once
        """
        try:
            response = RankingResponse.model_validate(payload)
        except ValidationError as e:
            raise SchemaValidationError(f"Ranking response does not match schema: {e}") from e

        expected = {c.id for c in candidates}
        seen: set[str] = set()
        for ranking in response.rankings:
            if ranking.caterer_id not in expected:
                raise SchemaValidationError(f"Ranking names unknown caterer {ranking.caterer_id}")
            if ranking.caterer_id in seen:
                raise SchemaValidationError(f"Caterer {ranking.caterer_id} ranked more than once")
            seen.add(ranking.caterer_id)

        missing = expected - seen
        if missing:
            raise SchemaValidationError(f"Rankings are missing caterers: {sorted(missing)}")
        return response

    def to_matches(self, request_id: str, response: RankingResponse) -> list[Match]:
        ordered = sorted(response.rankings, key=lambda r: r.score, reverse=True)
        matches = []
        for position, ranking in enumerate(ordered, start=1):
            # Threshold applies to the raw model score; only the stored score is rounded
            score = max(0, min(100, math.floor(ranking.score + 0.5)))
            status = (
                MatchStatus.PENDING
                if ranking.score >= self.policy.match_threshold
                else MatchStatus.LOW_MATCH
            )
            matches.append(
                Match.for_pair(
                    request_id,
                    ranking.caterer_id,
                    score=score,
                    status=status,
                    reasons=ranking.reasons,
                    concerns=ranking.concerns or [],
                    source=MatchSource.AI,
                    rank=position,
                )
            )
        return matches

    async def rank(self, request: EventRequest, candidates: list[CatererProfile]) -> RerankResult:
        """
        Rank every candidate and persist the matches.

        Returns a NO_ELIGIBLE_CATERERS result without calling the model when
        `candidates` is empty.

        Raises:
            ModelCallError: Timeout, provider failure, open circuit or schema violation
            PersistenceError: Matches or request status could not be written
        """
        with tracer.start_as_current_span("reranker.rank") as span:
            span.set_attribute("request_id", request.id)
            span.set_attribute("candidate_count", len(candidates))

            if not candidates:
                logger.info(f"No eligible caterers for request {request.id}; skipping model call")
                return RerankResult(status=OutcomeStatus.NO_ELIGIBLE_CATERERS)

            prompt = self.build_prompt(request, candidates)
            payload = await self._call_model(prompt)
            response = self.validate(payload, candidates)
            matches = self.to_matches(request.id, response)

            await self.matches.upsert_many(matches)
            await self.requests.update_status(request.id, RequestStatus.MATCHED)

            pending = sum(1 for m in matches if m.status == MatchStatus.PENDING)
            span.set_attribute("pending_count", pending)
            logger.info(
                f"Request {request.id} ranked: {len(matches)} matches, {pending} actionable"
            )
            return RerankResult(
                status=OutcomeStatus.RANKED,
                matches=matches,
                summary=response.summary,
                total_candidates=len(candidates),
            )
