"""
Eval and location API endpoints.

Admin views over the eval store (system health, stats, location and matching
evals, learned locations) plus location normalization.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.errors import InvalidRequestError
from ..core.observability import get_tracer
from ..models.evals import (
    LearnedBy,
    LearnedLocation,
    LocationEval,
    MatchingEval,
    NormalizedLocation,
    SystemHealth,
)
from ..services.eval_store import DEFAULT_EVAL_LIMIT, EvalStore
from ..services.location_normalizer import LocationNormalizer
from .dependencies import get_eval_store, get_location_normalizer, http_error

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

router = APIRouter(tags=["Evals"])


class EvalStats(BaseModel):
    location: dict[str, float]
    matching: dict[str, float]


class LocationCorrection(BaseModel):
    """Human correction of a location eval."""

    city: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class MatchingOutcomeUpdate(BaseModel):
    successful_booking: bool
    customer_rating: Optional[float] = Field(None, ge=1, le=5)


class LearnedLocationCreate(BaseModel):
    alias: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class NormalizeRequest(BaseModel):
    input: str = Field(..., min_length=1, description="Free-text location")


def _store_failure(action: str, e: Exception) -> HTTPException:
    logger.error(f"Eval store {action} failed: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(e)}",
    )


@router.get("/evals/health", response_model=SystemHealth, summary="Matching system health")
async def system_health(store: EvalStore = Depends(get_eval_store)) -> SystemHealth:
    try:
        return await store.get_system_health()
    except Exception as e:
        raise _store_failure("compute system health", e)


@router.get("/evals/stats", response_model=EvalStats, summary="Raw eval counters")
async def eval_stats(store: EvalStore = Depends(get_eval_store)) -> EvalStats:
    try:
        return EvalStats(
            location=await store.get_location_stats(),
            matching=await store.get_matching_stats(),
        )
    except Exception as e:
        raise _store_failure("load eval stats", e)


@router.get("/evals/locations", response_model=list[LocationEval], summary="Recent location evals")
async def location_evals(
    limit: int = Query(DEFAULT_EVAL_LIMIT, ge=1, le=1000),
    store: EvalStore = Depends(get_eval_store),
) -> list[LocationEval]:
    try:
        return await store.get_location_evals(limit)
    except Exception as e:
        raise _store_failure("load location evals", e)


@router.post(
    "/evals/locations/{eval_id}/correction",
    response_model=LocationEval,
    summary="Correct a location eval and learn the alias",
)
async def correct_location(
    eval_id: str,
    correction: LocationCorrection,
    store: EvalStore = Depends(get_eval_store),
) -> LocationEval:
    try:
        corrected = await store.correct_location_eval(
            eval_id, correction.city, correction.province, correction.lat, correction.lng
        )
    except Exception as e:
        raise _store_failure("correct location eval", e)

    if corrected is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Location eval {eval_id} not found",
        )
    logger.info(f"Location eval {eval_id} corrected to {correction.city}, {correction.province}")
    return corrected


@router.get("/evals/matching", response_model=list[MatchingEval], summary="Recent matching evals")
async def matching_evals(
    limit: int = Query(DEFAULT_EVAL_LIMIT, ge=1, le=1000),
    store: EvalStore = Depends(get_eval_store),
) -> list[MatchingEval]:
    try:
        return await store.get_matching_evals(limit)
    except Exception as e:
        raise _store_failure("load matching evals", e)


@router.post(
    "/evals/matching/{eval_id}/outcome",
    response_model=MatchingEval,
    summary="Record the booking outcome of a matching pass",
)
async def matching_outcome(
    eval_id: str,
    update: MatchingOutcomeUpdate,
    store: EvalStore = Depends(get_eval_store),
) -> MatchingEval:
    try:
        updated = await store.update_matching_eval_outcome(
            eval_id, update.successful_booking, update.customer_rating
        )
    except Exception as e:
        raise _store_failure("update matching eval", e)

    if updated is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Matching eval {eval_id} not found",
        )
    return updated


@router.get(
    "/evals/learned-locations",
    response_model=list[LearnedLocation],
    summary="All learned location aliases",
)
async def learned_locations(store: EvalStore = Depends(get_eval_store)) -> list[LearnedLocation]:
    try:
        locations = await store.get_all_learned_locations()
    except Exception as e:
        raise _store_failure("load learned locations", e)
    return sorted(locations, key=lambda loc: loc.use_count, reverse=True)


@router.post(
    "/evals/learned-locations",
    response_model=LearnedLocation,
    status_code=status.HTTP_201_CREATED,
    summary="Add a learned location alias",
)
async def add_learned_location(
    body: LearnedLocationCreate,
    store: EvalStore = Depends(get_eval_store),
) -> LearnedLocation:
    location = LearnedLocation(
        alias=body.alias.lower().strip(),
        city=body.city,
        province=body.province,
        lat=body.lat,
        lng=body.lng,
        use_count=0,
        added_by=LearnedBy.ADMIN,
    )
    try:
        await store.learn_location(location)
    except Exception as e:
        raise _store_failure("add learned location", e)
    return location


@router.delete("/evals/learned-locations", summary="Delete a learned location alias")
async def delete_learned_location(
    alias: str = Query(..., min_length=1),
    store: EvalStore = Depends(get_eval_store),
) -> dict:
    try:
        deleted = await store.delete_learned_location(alias)
    except Exception as e:
        raise _store_failure("delete learned location", e)
    return {"alias": alias.lower().strip(), "deleted": deleted}


@router.post(
    "/locations/normalize",
    response_model=NormalizedLocation,
    tags=["Locations"],
    summary="Resolve free-text location input",
)
async def normalize_location(
    body: NormalizeRequest,
    normalizer: LocationNormalizer = Depends(get_location_normalizer),
) -> NormalizedLocation:
    with tracer.start_as_current_span("api.locations.normalize"):
        try:
            return await normalizer.normalize(body.input)
        except InvalidRequestError as e:
            raise http_error(e)
