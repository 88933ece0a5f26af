"""
Data models for the Kai matching engine.

Pydantic models provide validation, serialization, and type safety across
scoring, ranking, scheduling and the eval store.
"""

from .caterer import (
    CatererProfile,
    EligibleCaterer,
    GeoPoint,
    SubscriptionStatus,
    SubscriptionTier,
)
from .event_request import BudgetType, EventRequest, MatchCriteria, RequestStatus
from .match import (
    CatererRanking,
    Match,
    MatchingOutcome,
    MatchSource,
    MatchStatus,
    OutcomeStatus,
    RankingResponse,
)
from .round_robin import (
    RoundRobinAssignment,
    RoundRobinCommit,
    RoundRobinSelection,
    RoundRobinState,
)
from .evals import (
    Confidence,
    LearnedBy,
    LearnedLocation,
    LocationEval,
    LocationSource,
    MatchingEval,
    NormalizedLocation,
    SystemHealth,
)

__all__ = [
    "CatererProfile",
    "EligibleCaterer",
    "GeoPoint",
    "SubscriptionStatus",
    "SubscriptionTier",
    "BudgetType",
    "EventRequest",
    "MatchCriteria",
    "RequestStatus",
    "CatererRanking",
    "Match",
    "MatchingOutcome",
    "MatchSource",
    "MatchStatus",
    "OutcomeStatus",
    "RankingResponse",
    "RoundRobinAssignment",
    "RoundRobinCommit",
    "RoundRobinSelection",
    "RoundRobinState",
    "Confidence",
    "LearnedBy",
    "LearnedLocation",
    "LocationEval",
    "LocationSource",
    "MatchingEval",
    "NormalizedLocation",
    "SystemHealth",
]
