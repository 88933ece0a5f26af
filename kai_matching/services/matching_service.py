"""
Matching Service - runs matching passes for event requests.

Control flow of a pass:
1. Load the request (missing → RequestNotFoundError) and mark it MATCHING;
   a pass that ends without matches restores the previous status
2. Hard-filter the caterer pool (capacity, affordability, active subscription)
3. Score deterministically and/or re-rank with the generative model
4. For tier-gated distribution, let the round-robin scheduler pick who gets the lead
5. Record a matching eval (best effort)

Input errors raise. Everything after input validation reports through
MatchingOutcome: RANKED / ASSIGNED on success, NO_ELIGIBLE_CATERERS for an
empty pool and FAILED with the failing stage and a retryable flag otherwise.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from ..core.errors import (
    InvalidRequestError,
    MatchingError,
    PersistenceError,
    RequestNotFoundError,
)
from ..core.locations import lookup_city
from ..core.observability import get_tracer
from ..core.policy import TierPolicy, default_tier_policy
from ..core.results import Failed, Found
from ..models.caterer import CatererProfile, GeoPoint, SubscriptionTier
from ..models.evals import Confidence, MatchingEval
from ..models.event_request import EventRequest, MatchCriteria, RequestStatus
from ..models.match import (
    Match,
    MatchingOutcome,
    MatchSource,
    MatchStatus,
    OutcomeStatus,
)
from ..repositories.base import Repositories
from .eval_store import EvalRecorder
from .location_normalizer import LocationNormalizer, calculate_total_budget
from .reranker import AIReRanker
from .round_robin import RoundRobinScheduler
from .scoring import BaseScorer, ScoreBreakdown

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


def _failed(request_id: str, error: MatchingError, **fields) -> MatchingOutcome:
    return MatchingOutcome(
        request_id=request_id,
        status=OutcomeStatus.FAILED,
        stage=error.stage,
        retryable=error.retryable,
        detail=str(error),
        **fields,
    )


class MatchingService:
    """
    High-level matching operations.

    Usage:
        service = MatchingService(repos, reranker, scheduler, recorder)
        outcome = await service.rank_with_ai("req_123")
    """

    def __init__(
        self,
        repos: Repositories,
        reranker: AIReRanker,
        scheduler: RoundRobinScheduler,
        recorder: EvalRecorder,
        scorer: Optional[BaseScorer] = None,
        normalizer: Optional[LocationNormalizer] = None,
        tier_policy: Optional[TierPolicy] = None,
        max_ai_candidates: int = 25,
        round_robin_limit: int = 5,
    ):
        self.repos = repos
        self.reranker = reranker
        self.scheduler = scheduler
        self.recorder = recorder
        self.scorer = scorer or BaseScorer()
        self.normalizer = normalizer
        self.tier_policy = tier_policy or default_tier_policy()
        self.max_ai_candidates = max_ai_candidates
        self.round_robin_limit = round_robin_limit

    # ---- shared steps -----------------------------------------------------

    async def _load_request(self, request_id: str) -> EventRequest:
        if not request_id or not request_id.strip():
            raise InvalidRequestError("request_id is required")

        lookup = await self.repos.requests.get(request_id)
        if isinstance(lookup, Found):
            return lookup.value
        if isinstance(lookup, Failed):
            raise PersistenceError(
                f"Could not load request {request_id}: {lookup.reason}", stage="load_request"
            )
        raise RequestNotFoundError(f"Event request {request_id} not found")

    def _criteria(self, request: EventRequest) -> MatchCriteria:
        try:
            criteria = request.to_criteria()
        except ValidationError as e:
            raise InvalidRequestError(f"Request {request.id} has invalid criteria: {e}") from e

        if criteria.location is None:
            # No coordinates on the request: use the city centre when the city is known
            city = lookup_city(request.match_city)
            if city is not None:
                criteria = criteria.model_copy(update={"location": GeoPoint(lat=city.lat, lng=city.lng)})
        return criteria

    def _total_budget(self, request: EventRequest) -> float:
        if request.total_budget is None and request.budget_per_person is None:
            return request.budget_max
        return calculate_total_budget(
            request.guest_count,
            request.budget_per_person,
            request.total_budget,
            request.budget_type,
        )

    async def _eligible(
        self, criteria: MatchCriteria, tier: SubscriptionTier
    ) -> list[tuple[CatererProfile, int]]:
        candidates = await self.repos.caterers.find_candidates(
            criteria.guest_count, criteria.budget_per_person
        )
        eligible = [c for c in candidates if self.scorer.passes_hard_filters(criteria, c)]
        return self.scorer.rank(criteria, eligible, tier)

    async def _record(
        self, request_id: str, total_budget: float, tier: SubscriptionTier, matches: list[Match]
    ) -> None:
        await self.recorder.record_matching(
            MatchingEval(
                request_id=request_id,
                total_budget=total_budget,
                assigned_tier=tier,
                caterers_matched=len(matches),
                caterers_contacted=sum(1 for m in matches if m.status == MatchStatus.PENDING),
                policy_version=self.tier_policy.version,
            )
        )

    async def _mark_matching(self, request: EventRequest) -> None:
        await self.repos.requests.update_status(request.id, RequestStatus.MATCHING)

    async def _unmark_matching(self, request: EventRequest) -> None:
        """Hand a request whose pass produced no matches back in its previous status."""
        try:
            await self.repos.requests.update_status(request.id, request.status)
        except MatchingError as e:
            # The pass outcome is already being reported; a stuck status is logged for repair
            logger.error(
                f"Request {request.id} left in '{RequestStatus.MATCHING.value}': "
                f"could not restore '{request.status.value}': {e}"
            )

    def _status_for(self, score: int) -> MatchStatus:
        if score >= self.scorer.policy.match_threshold:
            return MatchStatus.PENDING
        return MatchStatus.LOW_MATCH

    def _reasons(self, breakdown: ScoreBreakdown, tier: SubscriptionTier) -> list[str]:
        weights = self.scorer.weights_for(tier)
        parts = [
            ("Cuisine", breakdown.cuisine, weights.cuisine),
            ("Capacity", breakdown.capacity, weights.capacity),
            ("Price", breakdown.price, weights.price),
            ("Distance", breakdown.distance, weights.distance),
            ("Rating", breakdown.rating, weights.rating),
        ]
        return [f"{name}: {earned:.1f}/{weight:g}" for name, earned, weight in parts if earned > 0]

    # ---- operations -------------------------------------------------------

    async def rank_with_ai(self, request_id: str) -> MatchingOutcome:
        """
        Hard-filter, shortlist by base score and re-rank the shortlist with the model.

        Raises:
            InvalidRequestError: Blank id or invalid criteria
            RequestNotFoundError: Unknown request
        """
        with tracer.start_as_current_span("matching.rank_with_ai") as span:
            span.set_attribute("request_id", request_id)

            request = await self._load_request(request_id)
            criteria = self._criteria(request)
            total_budget = self._total_budget(request)
            tier = self.tier_policy.get_tier_for_budget(total_budget)

            try:
                await self._mark_matching(request)
                ranked = await self._eligible(criteria, tier)
                shortlist = [caterer for caterer, _ in ranked[: self.max_ai_candidates]]
                result = await self.reranker.rank(request, shortlist)
            except MatchingError as e:
                span.set_attribute("failed_stage", e.stage)
                logger.error(f"AI matching failed for request {request_id} at {e.stage}: {e}")
                await self._unmark_matching(request)
                return _failed(request_id, e, tier=tier)

            span.set_attribute("outcome", result.status.value)
            if result.status == OutcomeStatus.NO_ELIGIBLE_CATERERS:
                await self._unmark_matching(request)
                return MatchingOutcome(
                    request_id=request_id, status=OutcomeStatus.NO_ELIGIBLE_CATERERS, tier=tier
                )

            await self._record(request_id, total_budget, tier, result.matches)
            return MatchingOutcome(
                request_id=request_id,
                status=OutcomeStatus.RANKED,
                matches=result.matches,
                summary=result.summary,
                total_candidates=result.total_candidates,
                tier=tier,
            )

    async def score_deterministically(self, request_id: str, limit: int = 10) -> MatchingOutcome:
        """Base-score every eligible caterer and persist the top `limit` as matches."""
        if limit <= 0:
            raise InvalidRequestError("limit must be positive")

        with tracer.start_as_current_span("matching.score_deterministically") as span:
            span.set_attribute("request_id", request_id)

            request = await self._load_request(request_id)
            criteria = self._criteria(request)
            total_budget = self._total_budget(request)
            tier = self.tier_policy.get_tier_for_budget(total_budget)

            try:
                await self._mark_matching(request)
                ranked = await self._eligible(criteria, tier)
                if not ranked:
                    await self._unmark_matching(request)
                    return MatchingOutcome(
                        request_id=request_id, status=OutcomeStatus.NO_ELIGIBLE_CATERERS, tier=tier
                    )

                matches = []
                for position, (caterer, score) in enumerate(ranked[:limit], start=1):
                    breakdown = self.scorer.score_breakdown(criteria, caterer, tier)
                    matches.append(
                        Match.for_pair(
                            request_id,
                            caterer.id,
                            score=score,
                            status=self._status_for(score),
                            reasons=self._reasons(breakdown, tier),
                            source=MatchSource.BASE_SCORE,
                            rank=position,
                        )
                    )

                await self.repos.matches.upsert_many(matches)
                await self.repos.requests.update_status(request_id, RequestStatus.MATCHED)
            except MatchingError as e:
                logger.error(f"Deterministic matching failed for request {request_id}: {e}")
                await self._unmark_matching(request)
                return _failed(request_id, e, tier=tier)

            span.set_attribute("match_count", len(matches))
            await self._record(request_id, total_budget, tier, matches)
            return MatchingOutcome(
                request_id=request_id,
                status=OutcomeStatus.RANKED,
                matches=matches,
                summary=f"{len(matches)} of {len(ranked)} eligible caterers scored",
                total_candidates=len(ranked),
                tier=tier,
            )

    async def _resolve_city(self, request: EventRequest) -> str:
        city = request.match_city
        if request.normalized_city or self.normalizer is None or not city:
            return city
        location = await self.normalizer.normalize(city)
        if location.confidence == Confidence.LOW:
            return city
        return location.city

    async def assign_round_robin(
        self, request_id: str, limit: Optional[int] = None
    ) -> MatchingOutcome:
        """
        Distribute the lead to the next caterers in the (tier, city) rotation.

        Raises:
            InvalidRequestError: Blank id, no city on the request or bad limit
            RequestNotFoundError: Unknown request
        """
        limit = limit or self.round_robin_limit

        with tracer.start_as_current_span("matching.assign_round_robin") as span:
            span.set_attribute("request_id", request_id)

            request = await self._load_request(request_id)
            total_budget = self._total_budget(request)
            city = await self._resolve_city(request)
            if not city:
                raise InvalidRequestError(f"Request {request_id} has no city for round-robin")
            criteria = self._criteria(request)

            try:
                await self._mark_matching(request)
                assignment = await self.scheduler.assign_next(total_budget, city, limit)
                selection = assignment.selection
                span.set_attribute("tier", selection.tier.value)
                span.set_attribute("fallback", selection.fallback)
                span.set_attribute("attempts", assignment.attempts)

                if not assignment.assigned_ids:
                    await self._unmark_matching(request)
                    return MatchingOutcome(
                        request_id=request_id,
                        status=OutcomeStatus.NO_ELIGIBLE_CATERERS,
                        tier=selection.tier,
                        fallback=selection.fallback,
                        detail=(
                            "All selected caterers reached their monthly job cap"
                            if selection.caterers
                            else None
                        ),
                    )

                profiles = {
                    c.id: c
                    for c in await self.repos.caterers.find_candidates(
                        criteria.guest_count, criteria.budget_per_person
                    )
                }

                reason = (
                    f"Fallback assignment in {selection.city}: no {selection.tier.value} caterers available"
                    if selection.fallback
                    else f"Round-robin assignment for {selection.tier.value} tier in {selection.city}"
                )
                matches = []
                for position, caterer_id in enumerate(assignment.assigned_ids, start=1):
                    profile = profiles.get(caterer_id)
                    score = self.scorer.score(criteria, profile, selection.tier) if profile else 0
                    matches.append(
                        Match.for_pair(
                            request_id,
                            caterer_id,
                            score=score,
                            status=MatchStatus.PENDING,
                            reasons=[reason],
                            source=MatchSource.ROUND_ROBIN,
                            rank=position,
                        )
                    )

                await self.repos.matches.upsert_many(matches)
                await self.repos.requests.update_status(request_id, RequestStatus.MATCHED)
            except MatchingError as e:
                logger.error(f"Round-robin assignment failed for request {request_id}: {e}")
                await self._unmark_matching(request)
                return _failed(request_id, e)

            await self._record(request_id, total_budget, selection.tier, matches)
            return MatchingOutcome(
                request_id=request_id,
                status=OutcomeStatus.ASSIGNED,
                matches=matches,
                summary=f"Lead sent to {len(matches)} caterer(s)",
                total_candidates=selection.pool_size,
                tier=selection.tier,
                fallback=selection.fallback,
            )

    async def accept_match(self, match_id: str) -> list[Match]:
        """
        Accept one match and decline its siblings; the request becomes booked.

        Returns the updated matches, accepted one first.

        Raises:
            MatchNotFoundError: Unknown match
            MatchConflictError: Another match of the request is already accepted
        """
        with tracer.start_as_current_span("matching.accept_match") as span:
            span.set_attribute("match_id", match_id)

            updated = await self.repos.matches.accept(match_id)
            accepted = updated[0]
            await self.repos.requests.update_status(accepted.request_id, RequestStatus.BOOKED)

            logger.info(
                f"Match {match_id} accepted; {len(updated) - 1} sibling(s) declined"
            )
            return updated
