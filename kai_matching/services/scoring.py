"""
Deterministic base scoring of one caterer against one request.

The score is a weighted sum of five independent factors (cuisine, capacity,
price, distance, rating). Weights and policy fractions come from
ScoringPolicy, optionally overridden per tier by the TierPolicy table.
Everything here is pure: identical inputs always give identical output.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from ..core.policy import ScoringPolicy, ScoringWeights, TierPolicy, default_scoring_policy
from ..models.caterer import CatererProfile, SubscriptionStatus, SubscriptionTier
from ..models.event_request import MatchCriteria
from .geo import calculate_distance


@dataclass(frozen=True)
class ScoreBreakdown:
    """Points earned per factor, before rounding."""

    cuisine: float
    capacity: float
    price: float
    distance: float
    rating: float

    @property
    def raw_total(self) -> float:
        return self.cuisine + self.capacity + self.price + self.distance + self.rating

    @property
    def total(self) -> int:
        # Half away from zero; all factors are non-negative
        return max(0, min(100, math.floor(self.raw_total + 0.5)))


class BaseScorer:
    """
    Multi-factor scorer.

    Usage:
        scorer = BaseScorer()
        score = scorer.score(request.to_criteria(), caterer)
    """

    def __init__(
        self,
        policy: Optional[ScoringPolicy] = None,
        tier_policy: Optional[TierPolicy] = None,
    ):
        self.policy = policy or default_scoring_policy()
        self.tier_policy = tier_policy

    def weights_for(self, tier: Optional[SubscriptionTier] = None) -> ScoringWeights:
        if self.tier_policy is not None:
            override = self.tier_policy.weights_for(tier)
            if override is not None:
                return override
        return self.policy.weights

    def score(
        self,
        criteria: MatchCriteria,
        caterer: CatererProfile,
        tier: Optional[SubscriptionTier] = None,
    ) -> int:
        """Integer score in 0..100."""
        return self.score_breakdown(criteria, caterer, tier).total

    def score_breakdown(
        self,
        criteria: MatchCriteria,
        caterer: CatererProfile,
        tier: Optional[SubscriptionTier] = None,
    ) -> ScoreBreakdown:
        weights = self.weights_for(tier)
        return ScoreBreakdown(
            cuisine=self._cuisine(criteria, caterer, weights.cuisine),
            capacity=self._capacity(criteria, caterer, weights.capacity),
            price=self._price(criteria, caterer, weights.price),
            distance=self._distance(criteria, caterer, weights.distance),
            rating=self._rating(caterer, weights.rating),
        )

    def _cuisine(self, criteria: MatchCriteria, caterer: CatererProfile, weight: float) -> float:
        if not criteria.cuisines:
            return weight * self.policy.cuisine_default_fraction
        offered = {c.lower() for c in caterer.cuisines}
        matched = sum(1 for c in criteria.cuisines if c in offered)
        return matched / len(criteria.cuisines) * weight

    def _capacity(self, criteria: MatchCriteria, caterer: CatererProfile, weight: float) -> float:
        guests = criteria.guest_count
        if caterer.min_guests <= guests <= caterer.max_guests:
            return weight
        if guests < caterer.min_guests:
            return weight * self.policy.under_capacity_fraction
        return 0.0

    def _price(self, criteria: MatchCriteria, caterer: CatererProfile, weight: float) -> float:
        budget = criteria.budget_per_person
        ceiling = caterer.max_price_per_person * self.policy.price_premium_tolerance
        if caterer.min_price_per_person <= budget <= ceiling:
            return weight
        if budget >= caterer.min_price_per_person * self.policy.near_floor_ratio:
            return weight * self.policy.near_floor_fraction
        return 0.0

    def _distance(self, criteria: MatchCriteria, caterer: CatererProfile, weight: float) -> float:
        if criteria.location is None or caterer.location is None:
            return 0.0
        miles = calculate_distance(
            criteria.location.lat,
            criteria.location.lng,
            caterer.location.lat,
            caterer.location.lng,
        )
        for limit, fraction in self.policy.distance_bands:
            if miles <= limit:
                return weight * fraction
        return 0.0

    def _rating(self, caterer: CatererProfile, weight: float) -> float:
        if caterer.average_rating is None:
            return 0.0
        return caterer.average_rating / self.policy.rating_scale * weight

    def passes_hard_filters(self, criteria: MatchCriteria, caterer: CatererProfile) -> bool:
        """Active subscription, capacity and affordability lower bound."""
        return (
            caterer.is_active
            and caterer.subscription_status == SubscriptionStatus.ACTIVE
            and caterer.max_guests >= criteria.guest_count
            and caterer.min_price_per_person <= criteria.budget_per_person
        )

    def rank(
        self,
        criteria: MatchCriteria,
        caterers: Iterable[CatererProfile],
        tier: Optional[SubscriptionTier] = None,
    ) -> list[tuple[CatererProfile, int]]:
        """(caterer, score) pairs, best first; ties keep input order."""
        scored = [(c, self.score(criteria, c, tier)) for c in caterers]
        return sorted(scored, key=lambda pair: pair[1], reverse=True)
