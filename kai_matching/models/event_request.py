"""
Event request and match criteria models.

An EventRequest is the customer's stored submission; MatchCriteria is the
immutable view of it that a matching pass works from.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .caterer import GeoPoint


class RequestStatus(str, Enum):
    """Lifecycle of an event request."""

    PENDING = "pending"
    MATCHING = "matching"
    MATCHED = "matched"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BudgetType(str, Enum):
    PER_PERSON = "per_person"
    TOTAL = "total"


def _normalize_tags(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        item = value.strip().lower()
        if item and item not in seen:
            seen.append(item)
    return seen


class MatchCriteria(BaseModel):
    """
    Customer requirements for one event.

    Cuisines and dietary requirements are compared case-insensitively, so they
    are stored lower-cased and de-duplicated.
    """

    cuisines: list[str] = Field(default_factory=list)
    dietary_requirements: list[str] = Field(default_factory=list)
    guest_count: int = Field(..., gt=0)
    budget_min: float = Field(0, ge=0)
    budget_max: float = Field(..., ge=0)
    event_type: str = ""
    service_style: str = ""
    location: Optional[GeoPoint] = None

    @field_validator("cuisines", "dietary_requirements")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        return _normalize_tags(v)

    @model_validator(mode="after")
    def validate_budget(self) -> "MatchCriteria":
        if self.budget_min > self.budget_max:
            raise ValueError("budget_min cannot exceed budget_max")
        return self

    @property
    def budget_per_person(self) -> float:
        return self.budget_max / self.guest_count

    class Config:
        frozen = True


class EventRequest(BaseModel):
    """
    Stored event request.

    Attributes:
        id: Request identifier (partition key of its matches)
        customer_id: Owning customer
        cuisines / dietary_requirements / guest_count / budget_min / budget_max /
        event_type / service_style / location: Criteria fields
        city / state: Free-text location as entered
        normalized_city: City after location normalization (optional)
        event_date: Date of the event (optional)
        special_requests: Free text passed to the model
        budget_per_person / total_budget / budget_type: Budget as entered
        status: Lifecycle status
    """

    id: str = Field(..., min_length=1)
    customer_id: str = ""
    cuisines: list[str] = Field(default_factory=list)
    dietary_requirements: list[str] = Field(default_factory=list)
    guest_count: int = Field(..., gt=0)
    budget_min: float = Field(0, ge=0)
    budget_max: float = Field(..., ge=0)
    event_type: str = ""
    service_style: str = ""
    location: Optional[GeoPoint] = None
    city: str = ""
    state: str = ""
    normalized_city: Optional[str] = None
    event_date: Optional[date] = None
    special_requests: Optional[str] = None
    budget_per_person: Optional[float] = Field(None, ge=0)
    total_budget: Optional[float] = Field(None, ge=0)
    budget_type: BudgetType = BudgetType.PER_PERSON
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_criteria(self) -> MatchCriteria:
        """Freeze the matching-relevant fields for one pass."""
        return MatchCriteria(
            cuisines=self.cuisines,
            dietary_requirements=self.dietary_requirements,
            guest_count=self.guest_count,
            budget_min=self.budget_min,
            budget_max=self.budget_max,
            event_type=self.event_type,
            service_style=self.service_style,
            location=self.location,
        )

    @property
    def match_city(self) -> str:
        return (self.normalized_city or self.city or "").strip()
