"""
Store interfaces consumed by the matching engine.

The engine never owns a live connection. Each service receives only the
narrow capability it needs, which lets tests and ENVIRONMENT=local swap in the
in-memory implementations.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..core.results import Lookup
from ..models.caterer import CatererProfile, EligibleCaterer, SubscriptionTier
from ..models.event_request import EventRequest, RequestStatus
from ..models.match import Match, MatchStatus
from ..models.round_robin import RoundRobinState


class CatererDirectory(Protocol):
    """Read access to caterers plus the assignment stamp the scheduler writes."""

    async def find_candidates(
        self, guest_count: int, budget_per_person: float
    ) -> list[CatererProfile]:
        """Active caterers with max_guests >= guest_count and min price <= budget_per_person."""
        ...

    async def list_eligible(
        self,
        city: str,
        tier: Optional[SubscriptionTier] = None,
        limit: Optional[int] = None,
    ) -> list[EligibleCaterer]:
        """
        Active, actively subscribed caterers whose city contains `city`
        (already case-folded), optionally restricted to one tier, ordered by
        last_job_assigned_at ascending with never-assigned caterers first.
        """
        ...

    async def get_eligible(self, caterer_ids: Iterable[str]) -> list[EligibleCaterer]:
        """Current round-robin view of the given caterers (unknown ids are skipped)."""
        ...

    async def record_assignment(self, caterer_ids: Iterable[str], assigned_at: datetime) -> None:
        """Stamp last_job_assigned_at and increment the monthly job counter, per caterer atomically."""
        ...


class EventRequestStore(Protocol):
    async def get(self, request_id: str) -> Lookup[EventRequest]:
        ...

    async def update_status(self, request_id: str, status: RequestStatus) -> None:
        ...


class MatchRepository(Protocol):
    async def upsert_many(self, matches: list[Match]) -> None:
        """Insert or overwrite by (request_id, caterer_id)."""
        ...

    async def get(self, match_id: str) -> Lookup[Match]:
        ...

    async def list_for_request(self, request_id: str) -> list[Match]:
        ...

    async def accept(self, match_id: str) -> list[Match]:
        """
        Accept one match and decline all its siblings as one atomic step.

        Raises:
            MatchNotFoundError: Unknown match id
            MatchConflictError: Another match of the same request is (or just became) accepted
        """
        ...

    async def update_status(self, match_id: str, status: MatchStatus) -> Match:
        ...


class RoundRobinStateStore(Protocol):
    async def get(self, tier: SubscriptionTier, city: str) -> Lookup[RoundRobinState]:
        ...

    async def advance(
        self,
        tier: SubscriptionTier,
        city: str,
        count: int,
        last_caterer_id: Optional[str],
        expected_index: Optional[int] = None,
    ) -> RoundRobinState:
        """
        Atomically add `count` to the cursor, creating the state on first use.

        With `expected_index` the increment is conditional: it only applies
        while the cursor (0 for a missing state) still equals that value.

        Raises:
            CursorConflictError: The cursor no longer equals `expected_index`
            AtomicityError: The store could not apply the increment atomically
        """
        ...


@dataclass
class Repositories:
    caterers: CatererDirectory
    requests: EventRequestStore
    matches: MatchRepository
    round_robin: RoundRobinStateStore
