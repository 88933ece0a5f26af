"""
Service wiring for the API.

Each provider is cached so one process shares one set of store clients,
circuit breakers and rotation state. Tests replace them with
app.dependency_overrides.

ENVIRONMENT=local runs entirely in memory: in-memory repositories, no eval
backend and no generative model.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, status

from ..core.config import get_secrets, get_settings
from ..core.errors import (
    InvalidRequestError,
    MatchConflictError,
    MatchingError,
    MatchNotFoundError,
    RequestNotFoundError,
)
from ..core.policy import default_scoring_policy, default_tier_policy
from ..repositories.base import Repositories
from ..repositories.memory import build_memory_repositories
from ..services.eval_store import EvalRecorder, EvalStore, build_eval_store
from ..services.location_normalizer import LocationNormalizer
from ..services.matching_service import MatchingService
from ..services.model_client import AzureOpenAIModel, GenerativeModel, UnconfiguredModel
from ..services.reranker import AIReRanker
from ..services.round_robin import RoundRobinScheduler
from ..services.scoring import BaseScorer

logger = logging.getLogger(__name__)


def _model_endpoint() -> Optional[str]:
    settings = get_settings()
    if settings.azure_openai_endpoint:
        return settings.azure_openai_endpoint
    secrets = get_secrets()
    if secrets is None:
        return None
    try:
        return secrets.azure_openai_endpoint
    except ValueError as e:
        logger.warning(f"Azure OpenAI endpoint unavailable: {e}")
        return None


def _build_model(deployment: str) -> Optional[GenerativeModel]:
    settings = get_settings()
    if settings.environment == "local":
        return None
    endpoint = _model_endpoint()
    if not endpoint:
        logger.warning(f"No Azure OpenAI endpoint configured; '{deployment}' disabled")
        return None
    return AzureOpenAIModel(
        endpoint=endpoint,
        deployment=deployment,
        api_version=settings.azure_openai_api_version,
        timeout=settings.model_timeout_seconds,
    )


@lru_cache
def get_repositories() -> Repositories:
    settings = get_settings()
    if settings.environment == "local":
        logger.info("Using in-memory repositories (ENVIRONMENT=local)")
        return build_memory_repositories()

    # Imported lazily so local runs never touch the Cosmos SDK
    from ..repositories.cosmos import build_cosmos_repositories

    return build_cosmos_repositories(settings)


@lru_cache
def get_eval_store() -> EvalStore:
    return build_eval_store(get_settings(), get_secrets())


@lru_cache
def get_location_normalizer() -> LocationNormalizer:
    settings = get_settings()
    return LocationNormalizer(
        recorder=EvalRecorder(get_eval_store()),
        model=_build_model(settings.location_deployment),
        timeout_seconds=settings.model_timeout_seconds,
    )


@lru_cache
def get_scheduler() -> RoundRobinScheduler:
    repos = get_repositories()
    return RoundRobinScheduler(repos.caterers, repos.round_robin, default_tier_policy())


@lru_cache
def get_matching_service() -> MatchingService:
    settings = get_settings()
    repos = get_repositories()
    scoring_policy = default_scoring_policy()
    tier_policy = default_tier_policy()

    reranker = AIReRanker(
        model=_build_model(settings.ranking_deployment) or UnconfiguredModel(),
        matches=repos.matches,
        requests=repos.requests,
        policy=scoring_policy,
        timeout_seconds=settings.model_timeout_seconds,
    )
    return MatchingService(
        repos=repos,
        reranker=reranker,
        scheduler=get_scheduler(),
        recorder=EvalRecorder(get_eval_store()),
        scorer=BaseScorer(scoring_policy, tier_policy),
        normalizer=get_location_normalizer(),
        tier_policy=tier_policy,
        max_ai_candidates=settings.max_ai_candidates,
        round_robin_limit=settings.round_robin_default_limit,
    )


def http_error(error: MatchingError) -> HTTPException:
    """Map an engine error onto an HTTP status."""
    if isinstance(error, (RequestNotFoundError, MatchNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, InvalidRequestError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, MatchConflictError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(
        status_code=code,
        detail={"message": str(error), "stage": error.stage, "retryable": error.retryable},
    )
