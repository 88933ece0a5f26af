"""
Round-robin rotation state.

One RoundRobinState document per (tier, city), stored in the Cosmos DB
'round-robin-state' container with id "{tier}:{city}". The assignment index
only ever grows; it advances by exactly the size of each committed batch.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from .caterer import EligibleCaterer, SubscriptionTier


def state_id_for(tier: SubscriptionTier, city: str) -> str:
    return f"{SubscriptionTier(tier).value}:{city}"


class RoundRobinState(BaseModel):
    """Persisted cursor for one (tier, city) rotation."""

    tier: SubscriptionTier
    city: str
    assignment_index: int = Field(0, ge=0)
    last_assigned_caterer_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def id(self) -> str:
        return state_id_for(self.tier, self.city)


class RoundRobinSelection(BaseModel):
    """Caterers chosen by one select_next call."""

    tier: SubscriptionTier
    city: str
    start_index: int = 0
    caterers: list[EligibleCaterer] = Field(default_factory=list)
    fallback: bool = False
    pool_size: int = 0

    @property
    def caterer_ids(self) -> list[str]:
        return [c.id for c in self.caterers]


class RoundRobinCommit(BaseModel):
    """Outcome of one commit_assignment call."""

    state: RoundRobinState
    assigned_ids: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)


class RoundRobinAssignment(BaseModel):
    """A selection and the commit that recorded it (None when nobody was selected)."""

    selection: RoundRobinSelection
    commit: Optional[RoundRobinCommit] = None
    attempts: int = Field(1, ge=1)

    @property
    def assigned_ids(self) -> list[str]:
        return self.commit.assigned_ids if self.commit else []
