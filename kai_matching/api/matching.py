"""
Matching API endpoints.

Runs matching passes for event requests and accepts matches. A FAILED outcome
is returned with status 502 and the same body, so clients can read the failed
stage and the retryable flag either way.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import MatchingError
from ..core.observability import get_tracer, log_with_correlation
from ..models.match import Match, MatchingOutcome, OutcomeStatus
from ..services.matching_service import MatchingService
from .dependencies import get_matching_service, http_error

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

router = APIRouter(tags=["Matching"])


class AcceptResponse(BaseModel):
    """Result of accepting a match."""

    accepted: Match
    declined: list[Match] = Field(default_factory=list)


def _respond(outcome: MatchingOutcome):
    if outcome.status == OutcomeStatus.FAILED:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=outcome.model_dump(mode="json"),
        )
    return outcome


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or "N/A"


@router.post(
    "/requests/{request_id}/ai-match",
    response_model=MatchingOutcome,
    summary="Rank caterers for a request with the generative model",
)
async def ai_match(
    request_id: str,
    request: Request,
    service: MatchingService = Depends(get_matching_service),
):
    with tracer.start_as_current_span("api.matching.ai_match") as span:
        span.set_attribute("request_id", request_id)
        try:
            outcome = await service.rank_with_ai(request_id)
        except MatchingError as e:
            logger.warning(f"AI match rejected for {request_id}: {e}")
            raise http_error(e)

        log_with_correlation(
            f"AI match for {request_id}: {outcome.status.value} ({len(outcome.matches)} matches)",
            correlation_id=_correlation_id(request),
        )
        return _respond(outcome)


@router.post(
    "/requests/{request_id}/score",
    response_model=MatchingOutcome,
    summary="Score caterers deterministically and persist the top matches",
)
async def score_request(
    request_id: str,
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Max matches to persist"),
    service: MatchingService = Depends(get_matching_service),
):
    with tracer.start_as_current_span("api.matching.score") as span:
        span.set_attribute("request_id", request_id)
        try:
            outcome = await service.score_deterministically(request_id, limit=limit)
        except MatchingError as e:
            raise http_error(e)

        log_with_correlation(
            f"Base scoring for {request_id}: {outcome.status.value}",
            correlation_id=_correlation_id(request),
        )
        return _respond(outcome)


@router.post(
    "/requests/{request_id}/round-robin",
    response_model=MatchingOutcome,
    summary="Distribute a request to the next caterers in rotation",
)
async def round_robin_assign(
    request_id: str,
    request: Request,
    limit: int | None = Query(None, ge=1, le=50, description="Caterers to assign"),
    service: MatchingService = Depends(get_matching_service),
):
    with tracer.start_as_current_span("api.matching.round_robin") as span:
        span.set_attribute("request_id", request_id)
        try:
            outcome = await service.assign_round_robin(request_id, limit=limit)
        except MatchingError as e:
            raise http_error(e)

        log_with_correlation(
            f"Round-robin for {request_id}: {outcome.status.value} "
            f"(tier={outcome.tier.value if outcome.tier else 'n/a'}, fallback={outcome.fallback})",
            correlation_id=_correlation_id(request),
        )
        return _respond(outcome)


@router.post(
    "/matches/{match_id}/accept",
    response_model=AcceptResponse,
    summary="Accept a match and decline its siblings",
)
async def accept_match(
    match_id: str,
    request: Request,
    service: MatchingService = Depends(get_matching_service),
) -> AcceptResponse:
    with tracer.start_as_current_span("api.matching.accept") as span:
        span.set_attribute("match_id", match_id)
        try:
            updated = await service.accept_match(match_id)
        except MatchingError as e:
            span.set_attribute("error", str(e))
            raise http_error(e)
        except Exception as e:
            logger.error(f"Accepting match {match_id} failed: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Failed to accept match: {str(e)}",
            )

        log_with_correlation(
            f"Match {match_id} accepted",
            correlation_id=_correlation_id(request),
        )
        return AcceptResponse(accepted=updated[0], declined=updated[1:])
