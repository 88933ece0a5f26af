"""
Matching engine services.

- geo: Haversine distance
- scoring: Deterministic base scorer
- model_client: Generative model protocol and Azure OpenAI client
- reranker: AI re-ranking of a caterer shortlist
- round_robin: Fair lead distribution per (tier, city)
- eval_store: Eval/telemetry store and best-effort recorder
- location_normalizer: Free-text location resolution
- matching_service: End-to-end matching passes
"""

from .eval_store import EvalRecorder, InMemoryEvalStore, NullEvalStore, RedisEvalStore
from .geo import calculate_distance
from .location_normalizer import LocationNormalizer, calculate_total_budget
from .matching_service import MatchingService
from .model_client import AzureOpenAIModel, GenerativeModel, UnconfiguredModel
from .reranker import AIReRanker, RerankResult
from .round_robin import RoundRobinScheduler
from .scoring import BaseScorer, ScoreBreakdown

__all__ = [
    "EvalRecorder",
    "InMemoryEvalStore",
    "NullEvalStore",
    "RedisEvalStore",
    "calculate_distance",
    "LocationNormalizer",
    "calculate_total_budget",
    "MatchingService",
    "AzureOpenAIModel",
    "GenerativeModel",
    "UnconfiguredModel",
    "AIReRanker",
    "RerankResult",
    "RoundRobinScheduler",
    "BaseScorer",
    "ScoreBreakdown",
]
