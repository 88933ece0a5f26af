"""
Versioned matching policy: tier table and scoring constants.

No logic beyond lookups here, so a policy change never touches the scorer or
the scheduler. Bump `version` whenever a number changes; it is recorded on
every matching eval so outcomes can be compared across policies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from ..models.caterer import SubscriptionTier


@dataclass(frozen=True)
class ScoringWeights:
    """Points awarded per factor. Must sum to 100."""

    cuisine: float = 30
    capacity: float = 20
    price: float = 25
    distance: float = 15
    rating: float = 10

    @property
    def total(self) -> float:
        return self.cuisine + self.capacity + self.price + self.distance + self.rating


@dataclass(frozen=True)
class ScoringPolicy:
    """
    Constants for the deterministic base score.

    The fractions below were tuned by hand on live traffic rather than derived,
    which is why they live here instead of in the scoring code.
    """

    weights: ScoringWeights = field(default_factory=ScoringWeights)

    # No cuisines requested: award this share of the cuisine weight
    cuisine_default_fraction: float = 0.5

    # Guest count below the caterer's minimum: share of the capacity weight
    under_capacity_fraction: float = 0.5

    # Budget per person may exceed the caterer's max price by this factor
    price_premium_tolerance: float = 1.2
    # Budget per person at or above min_price * near_floor_ratio earns near_floor_fraction
    near_floor_ratio: float = 0.8
    near_floor_fraction: float = 0.7

    # (max miles, share of distance weight), checked in order
    distance_bands: Tuple[Tuple[float, float], ...] = ((25.0, 1.0), (50.0, 0.7), (100.0, 0.3))

    rating_scale: float = 5.0

    # AI re-rank score at or above which a match is an actionable lead
    match_threshold: int = 70

    def validate(self) -> None:
        if abs(self.weights.total - 100) > 1e-9:
            raise ValueError(f"scoring weights must sum to 100, got {self.weights.total}")
        if not self.distance_bands:
            raise ValueError("distance_bands cannot be empty")
        limits = [limit for limit, _ in self.distance_bands]
        if limits != sorted(limits):
            raise ValueError("distance_bands must be ordered by increasing distance")
        for _, fraction in self.distance_bands:
            if not 0 <= fraction <= 1:
                raise ValueError("distance band fractions must be within [0, 1]")
        if not 0 <= self.match_threshold <= 100:
            raise ValueError("match_threshold must be within [0, 100]")


@dataclass(frozen=True)
class TierRule:
    """Budget band, monthly job cap and optional weight override for one tier."""

    min_budget: float
    max_budget: Optional[float]
    monthly_job_cap: Optional[int]  # None means unlimited
    weights: Optional[ScoringWeights] = None


def _default_tiers() -> Dict[SubscriptionTier, TierRule]:
    return {
        SubscriptionTier.BASIC: TierRule(min_budget=0, max_budget=20000, monthly_job_cap=5),
        SubscriptionTier.PRO: TierRule(min_budget=20000, max_budget=50000, monthly_job_cap=15),
        SubscriptionTier.BUSINESS: TierRule(min_budget=50000, max_budget=None, monthly_job_cap=None),
    }


@dataclass(frozen=True)
class TierPolicy:
    """Budget → tier routing and tier → monthly cap lookups."""

    version: str = "2025.1"
    tiers: Dict[SubscriptionTier, TierRule] = field(default_factory=_default_tiers)

    def get_tier_for_budget(self, total_budget: float) -> SubscriptionTier:
        """Highest tier whose minimum budget the total reaches."""
        ordered = sorted(self.tiers.items(), key=lambda item: item[1].min_budget, reverse=True)
        for tier, rule in ordered:
            if total_budget >= rule.min_budget:
                return tier
        return ordered[-1][0]

    def monthly_cap(self, tier: SubscriptionTier) -> Optional[int]:
        return self.tiers[SubscriptionTier(tier)].monthly_job_cap

    def weights_for(self, tier: Optional[SubscriptionTier]) -> Optional[ScoringWeights]:
        if tier is None:
            return None
        return self.tiers[SubscriptionTier(tier)].weights

    def validate(self) -> None:
        missing = set(SubscriptionTier) - set(self.tiers)
        if missing:
            raise ValueError(f"tier table is missing {sorted(t.value for t in missing)}")
        for tier, rule in self.tiers.items():
            if rule.max_budget is not None and rule.max_budget < rule.min_budget:
                raise ValueError(f"{tier.value}: max_budget below min_budget")
            if rule.monthly_job_cap is not None and rule.monthly_job_cap < 0:
                raise ValueError(f"{tier.value}: monthly_job_cap cannot be negative")
            if rule.weights is not None and abs(rule.weights.total - 100) > 1e-9:
                raise ValueError(f"{tier.value}: weight override must sum to 100")


def default_scoring_policy() -> ScoringPolicy:
    p = ScoringPolicy()
    p.validate()
    return p


def default_tier_policy() -> TierPolicy:
    p = TierPolicy()
    p.validate()
    return p
