"""
Caterer models.

CatererProfile is the read-only snapshot consumed by scoring and hard filters.
EligibleCaterer is the slimmer view the round-robin scheduler rotates over.
The authoritative record lives in the Cosmos DB 'caterers' container.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class SubscriptionTier(str, Enum):
    """Subscription level gating monthly job volume and rotation pool."""

    BASIC = "basic"
    PRO = "pro"
    BUSINESS = "business"


class SubscriptionStatus(str, Enum):
    """Billing state of a caterer's subscription."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


class GeoPoint(BaseModel):
    """Latitude/longitude pair in decimal degrees."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    class Config:
        frozen = True


class CatererProfile(BaseModel):
    """
    Caterer servable-capacity snapshot.

    Attributes:
        id: Caterer identifier
        business_name: Display name
        cuisines: Offered cuisines
        service_styles: Offered service styles (buffet, plated, ...)
        min_guests / max_guests: Inclusive guest-count range
        min_price_per_person / max_price_per_person: Per-person price range
        average_rating: 0-5, None for caterers without reviews
        description: Free text shown to the model
        location: Base location (optional)
        city: City the caterer serves
        subscription_tier / subscription_status / is_active: Eligibility flags
        last_job_assigned_at: Last round-robin assignment (None if never)
        jobs_received_this_month: Monthly job counter
    """

    id: str = Field(..., min_length=1)
    business_name: str = Field(..., min_length=1, max_length=200)
    cuisines: list[str] = Field(default_factory=list)
    service_styles: list[str] = Field(default_factory=list)
    min_guests: int = Field(0, ge=0)
    max_guests: int = Field(..., ge=0)
    min_price_per_person: float = Field(0, ge=0)
    max_price_per_person: float = Field(..., ge=0)
    average_rating: Optional[float] = Field(None, ge=0, le=5)
    description: str = ""
    location: Optional[GeoPoint] = None
    city: str = ""
    subscription_tier: SubscriptionTier = SubscriptionTier.BASIC
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    is_active: bool = True
    last_job_assigned_at: Optional[datetime] = None
    jobs_received_this_month: int = Field(0, ge=0)

    @field_validator("cuisines", "service_styles")
    @classmethod
    def strip_entries(cls, v: list[str]) -> list[str]:
        return [item.strip() for item in v if item and item.strip()]

    @model_validator(mode="after")
    def validate_ranges(self) -> "CatererProfile":
        if self.min_guests > self.max_guests:
            raise ValueError("min_guests cannot exceed max_guests")
        if self.min_price_per_person > self.max_price_per_person:
            raise ValueError("min_price_per_person cannot exceed max_price_per_person")
        return self

    def to_eligible(self) -> "EligibleCaterer":
        return EligibleCaterer(
            id=self.id,
            business_name=self.business_name,
            subscription_tier=self.subscription_tier,
            last_job_assigned_at=self.last_job_assigned_at,
            jobs_received_this_month=self.jobs_received_this_month,
            city=self.city,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "cat_7f3a",
                "business_name": "Mama Afrika Kitchen",
                "cuisines": ["african", "braai"],
                "service_styles": ["buffet"],
                "min_guests": 20,
                "max_guests": 300,
                "min_price_per_person": 150,
                "max_price_per_person": 450,
                "average_rating": 4.6,
                "description": "Family-run caterer specialising in traditional feasts.",
                "location": {"lat": -26.2041, "lng": 28.0473},
                "city": "Johannesburg",
                "subscription_tier": "pro",
                "subscription_status": "active",
                "is_active": True,
                "last_job_assigned_at": None,
                "jobs_received_this_month": 3,
            }
        }


class EligibleCaterer(BaseModel):
    """Round-robin view of a caterer."""

    id: str
    business_name: str
    subscription_tier: SubscriptionTier
    last_job_assigned_at: Optional[datetime] = None
    jobs_received_this_month: int = Field(0, ge=0)
    city: str = ""


def assignment_order_key(caterer: EligibleCaterer):
    """Never-assigned first, then oldest assignment first."""
    assigned = caterer.last_job_assigned_at
    return (assigned is not None, assigned or datetime.min.replace(tzinfo=timezone.utc))


def rotation_order_key(caterer: EligibleCaterer) -> str:
    """Stable position of a caterer in its (tier, city) rotation."""
    return caterer.id
