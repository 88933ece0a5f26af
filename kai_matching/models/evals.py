"""
Eval/telemetry models.

Immutable observations of location normalization and matching outcomes, kept
for offline quality measurement. Only the verification/correction fields of a
LocationEval and the outcome fields of a MatchingEval change after creation.
"""

import random
import string
import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .caterer import SubscriptionTier


def now_ms() -> int:
    return int(time.time() * 1000)


def new_eval_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}_{now_ms()}_{suffix}"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LocationSource(str, Enum):
    ALIAS = "alias"
    LEARNED = "learned"
    AI = "ai"


class LearnedBy(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    USER_CORRECTION = "user_correction"


class LocationEval(BaseModel):
    """One location normalization observation."""

    id: str = Field(default_factory=lambda: new_eval_id("loc"))
    input: str
    normalized_city: str
    normalized_province: str
    confidence: Confidence
    source: LocationSource
    timestamp: int = Field(default_factory=now_ms)
    verified: Optional[bool] = None
    corrected_city: Optional[str] = None
    corrected_province: Optional[str] = None


class MatchingEval(BaseModel):
    """One matching pass observation and, later, its booking outcome."""

    id: str = Field(default_factory=lambda: new_eval_id("match"))
    request_id: str
    total_budget: float = Field(0, ge=0)
    assigned_tier: SubscriptionTier
    caterers_matched: int = Field(0, ge=0)
    caterers_contacted: int = Field(0, ge=0)
    successful_booking: bool = False
    customer_rating: Optional[float] = Field(None, ge=1, le=5)
    policy_version: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


class LearnedLocation(BaseModel):
    """Alias → coordinates mapping learned from the model, admins or corrections."""

    alias: str = Field(..., min_length=1)
    city: str
    province: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    use_count: int = Field(0, ge=0)
    last_used: int = Field(default_factory=now_ms)
    added_by: LearnedBy = LearnedBy.SYSTEM


class NormalizedLocation(BaseModel):
    """Resolved location; also the schema the model must satisfy."""

    city: str = Field(..., description="The standardized city name")
    province: str = Field(..., description="The South African province")
    latitude: float = Field(..., ge=-90, le=90, description="Approximate latitude coordinate")
    longitude: float = Field(..., ge=-180, le=180, description="Approximate longitude coordinate")
    confidence: Confidence = Field(..., description="Confidence in the location match")
    original_input: str = Field(..., description="The original user input")


class SystemHealth(BaseModel):
    location_accuracy: float = 0
    matching_success_rate: float = 0
    average_rating: float = 0
    learned_locations_count: int = 0
