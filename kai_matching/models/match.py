"""
Match model and the structured ranking schema expected from the model.

A Match links one event request to one caterer. It is stored in the Cosmos DB
'matches' container, partitioned by /request_id, with the deterministic id
"{request_id}:{caterer_id}" so repeated rankings overwrite instead of duplicate.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .caterer import SubscriptionTier


class MatchStatus(str, Enum):
    """Status of a match in the request workflow."""

    PENDING = "pending"
    VIEWED = "viewed"
    CONTACTED = "contacted"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    LOW_MATCH = "low_match"


class MatchSource(str, Enum):
    """Which stage produced the match."""

    AI = "ai"
    BASE_SCORE = "base_score"
    ROUND_ROBIN = "round_robin"


def match_id_for(request_id: str, caterer_id: str) -> str:
    return f"{request_id}:{caterer_id}"


class Match(BaseModel):
    """
    Match entity model.

    Attributes:
        id: "{request_id}:{caterer_id}"
        request_id: Event request (partition key)
        caterer_id: Matched caterer
        score: 0-100
        status: Workflow status
        reasons: Why the caterer fits
        concerns: Potential limitations (may be empty)
        source: Stage that produced the match
        rank: 1-based position within the pass that produced it
    """

    id: str
    request_id: str = Field(..., min_length=1)
    caterer_id: str = Field(..., min_length=1)
    score: int = Field(..., ge=0, le=100)
    status: MatchStatus = MatchStatus.PENDING
    reasons: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    source: MatchSource = MatchSource.AI
    rank: Optional[int] = Field(None, ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_pair(cls, request_id: str, caterer_id: str, **fields) -> "Match":
        return cls(
            id=match_id_for(request_id, caterer_id),
            request_id=request_id,
            caterer_id=caterer_id,
            **fields,
        )


class CatererRanking(BaseModel):
    """One entry of the model's ranking output."""

    model_config = ConfigDict(populate_by_name=True)

    caterer_id: str = Field(..., alias="catererId", min_length=1)
    score: float = Field(..., ge=0, le=100)
    reasons: list[str] = Field(..., description="Why this caterer is a good match")
    concerns: Optional[list[str]] = Field(
        None, description="Potential concerns or limitations"
    )


class RankingResponse(BaseModel):
    """Schema the generative model must satisfy when ranking caterers."""

    model_config = ConfigDict(populate_by_name=True)

    rankings: list[CatererRanking]
    summary: str = Field(..., description="Brief summary of the matching results")

    @field_validator("summary")
    @classmethod
    def summary_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("summary cannot be empty")
        return v.strip()


class OutcomeStatus(str, Enum):
    """What a matching pass reports back to its caller."""

    RANKED = "ranked"
    ASSIGNED = "assigned"
    NO_ELIGIBLE_CATERERS = "no_eligible_caterers"
    FAILED = "failed"


class MatchingOutcome(BaseModel):
    """
    Result of a matching pass.

    A FAILED outcome names the stage that failed and whether a retry may help.
    NO_ELIGIBLE_CATERERS is a normal, non-error result.
    """

    request_id: str
    status: OutcomeStatus
    matches: list[Match] = Field(default_factory=list)
    summary: Optional[str] = None
    total_candidates: int = 0
    tier: Optional[SubscriptionTier] = None
    fallback: bool = False
    stage: Optional[str] = None
    retryable: bool = False
    detail: Optional[str] = None
