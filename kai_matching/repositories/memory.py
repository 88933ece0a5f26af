"""
In-memory stores for tests and local development (ENVIRONMENT=local).

Each store guards its state with a lock so the read-check-write sequences
behind accept and advance stay atomic even when called from several threads.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..core.errors import CursorConflictError, MatchConflictError, MatchNotFoundError
from ..core.results import Found, Lookup, NotFound
from ..models.caterer import (
    CatererProfile,
    EligibleCaterer,
    SubscriptionStatus,
    SubscriptionTier,
    assignment_order_key,
)
from ..models.event_request import EventRequest, RequestStatus
from ..models.match import Match, MatchStatus
from ..models.round_robin import RoundRobinState, state_id_for
from .base import Repositories

logger = logging.getLogger(__name__)


class InMemoryCatererDirectory:
    def __init__(self, caterers: Iterable[CatererProfile] = ()):
        self._lock = threading.Lock()
        self._caterers: dict[str, CatererProfile] = {}
        for caterer in caterers:
            self.add(caterer)

    def add(self, caterer: CatererProfile) -> None:
        with self._lock:
            self._caterers[caterer.id] = caterer

    def profile(self, caterer_id: str) -> CatererProfile:
        return self._caterers[caterer_id]

    def _is_available(self, caterer: CatererProfile) -> bool:
        return caterer.is_active and caterer.subscription_status == SubscriptionStatus.ACTIVE

    async def find_candidates(
        self, guest_count: int, budget_per_person: float
    ) -> list[CatererProfile]:
        with self._lock:
            return [
                c
                for c in self._caterers.values()
                if self._is_available(c)
                and c.max_guests >= guest_count
                and c.min_price_per_person <= budget_per_person
            ]

    async def list_eligible(
        self,
        city: str,
        tier: Optional[SubscriptionTier] = None,
        limit: Optional[int] = None,
    ) -> list[EligibleCaterer]:
        with self._lock:
            pool = [
                c.to_eligible()
                for c in self._caterers.values()
                if self._is_available(c)
                and city in c.city.lower()
                and (tier is None or c.subscription_tier == tier)
            ]
        # sorted() is stable, so ties keep insertion order
        pool = sorted(pool, key=assignment_order_key)
        return pool[:limit] if limit is not None else pool

    async def get_eligible(self, caterer_ids: Iterable[str]) -> list[EligibleCaterer]:
        with self._lock:
            return [
                self._caterers[cid].to_eligible()
                for cid in caterer_ids
                if cid in self._caterers
            ]

    async def record_assignment(self, caterer_ids: Iterable[str], assigned_at: datetime) -> None:
        with self._lock:
            for cid in caterer_ids:
                caterer = self._caterers.get(cid)
                if caterer is None:
                    logger.warning(f"record_assignment: unknown caterer {cid}")
                    continue
                self._caterers[cid] = caterer.model_copy(
                    update={
                        "last_job_assigned_at": assigned_at,
                        "jobs_received_this_month": caterer.jobs_received_this_month + 1,
                    }
                )


class InMemoryEventRequestStore:
    def __init__(self, requests: Iterable[EventRequest] = ()):
        self._lock = threading.Lock()
        self._requests: dict[str, EventRequest] = {r.id: r for r in requests}

    def add(self, request: EventRequest) -> None:
        with self._lock:
            self._requests[request.id] = request

    async def get(self, request_id: str) -> Lookup[EventRequest]:
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            return NotFound(request_id)
        return Found(request)

    async def update_status(self, request_id: str, status: RequestStatus) -> None:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                logger.warning(f"update_status: unknown request {request_id}")
                return
            self._requests[request_id] = request.model_copy(
                update={"status": status, "updated_at": datetime.now(timezone.utc)}
            )


class InMemoryMatchRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._matches: dict[str, Match] = {}

    async def upsert_many(self, matches: list[Match]) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            for match in matches:
                existing = self._matches.get(match.id)
                created_at = existing.created_at if existing else match.created_at
                self._matches[match.id] = match.model_copy(
                    update={"created_at": created_at, "updated_at": now}
                )

    async def get(self, match_id: str) -> Lookup[Match]:
        with self._lock:
            match = self._matches.get(match_id)
        if match is None:
            return NotFound(match_id)
        return Found(match)

    async def list_for_request(self, request_id: str) -> list[Match]:
        with self._lock:
            return [m for m in self._matches.values() if m.request_id == request_id]

    async def accept(self, match_id: str) -> list[Match]:
        now = datetime.now(timezone.utc)
        with self._lock:
            match = self._matches.get(match_id)
            if match is None:
                raise MatchNotFoundError(f"Match {match_id} not found")

            siblings = [
                m for m in self._matches.values()
                if m.request_id == match.request_id and m.id != match_id
            ]
            if any(s.status == MatchStatus.ACCEPTED for s in siblings):
                raise MatchConflictError(
                    f"Request {match.request_id} already has an accepted match"
                )
            if match.status == MatchStatus.DECLINED:
                raise MatchConflictError(f"Match {match_id} was declined")

            updated = [match.model_copy(update={"status": MatchStatus.ACCEPTED, "updated_at": now})]
            for sibling in siblings:
                updated.append(
                    sibling.model_copy(update={"status": MatchStatus.DECLINED, "updated_at": now})
                )
            for m in updated:
                self._matches[m.id] = m
            return updated

    async def update_status(self, match_id: str, status: MatchStatus) -> Match:
        with self._lock:
            match = self._matches.get(match_id)
            if match is None:
                raise MatchNotFoundError(f"Match {match_id} not found")
            if status == MatchStatus.ACCEPTED:
                raise MatchConflictError("use accept() to accept a match")
            updated = match.model_copy(
                update={"status": status, "updated_at": datetime.now(timezone.utc)}
            )
            self._matches[match_id] = updated
            return updated


class InMemoryRoundRobinStateStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[str, RoundRobinState] = {}

    async def get(self, tier: SubscriptionTier, city: str) -> Lookup[RoundRobinState]:
        with self._lock:
            state = self._states.get(state_id_for(tier, city))
        if state is None:
            return NotFound(state_id_for(tier, city))
        return Found(state)

    async def advance(
        self,
        tier: SubscriptionTier,
        city: str,
        count: int,
        last_caterer_id: Optional[str],
        expected_index: Optional[int] = None,
    ) -> RoundRobinState:
        if count < 0:
            raise ValueError("count cannot be negative")
        key = state_id_for(tier, city)
        with self._lock:
            current = self._states.get(key) or RoundRobinState(tier=tier, city=city)
            if expected_index is not None and current.assignment_index != expected_index:
                raise CursorConflictError(
                    f"Cursor {key} is at {current.assignment_index}, expected {expected_index}"
                )
            updated = current.model_copy(
                update={
                    "assignment_index": current.assignment_index + count,
                    "last_assigned_caterer_id": last_caterer_id or current.last_assigned_caterer_id,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._states[key] = updated
            return updated


def build_memory_repositories(
    caterers: Iterable[CatererProfile] = (),
    requests: Iterable[EventRequest] = (),
) -> Repositories:
    return Repositories(
        caterers=InMemoryCatererDirectory(caterers),
        requests=InMemoryEventRequestStore(requests),
        matches=InMemoryMatchRepository(),
        round_robin=InMemoryRoundRobinStateStore(),
    )
