"""
Round-robin fairness scheduler.

Among caterers that are otherwise eligible for a lead, job opportunities cycle
through the whole (tier, city) pool instead of always favoring the same
caterers. Rotation state is one persistent cursor per (tier, city).

Selection order:
1. Map the total budget to a tier (TierPolicy)
2. Case-fold and trim the city
3. Load active, actively subscribed caterers of that tier whose city contains
   the normalized city
4. Drop caterers at or above their monthly job cap
5. Empty pool: fall back to any tier in the city, never-assigned first, then
   oldest assignment first, up to `limit`
6. Otherwise walk the pool cyclically from the persisted cursor

The walk runs over the rotation order (caterer id), which assignments never
change, so the cursor always names the same slot and a full cycle reaches
every caterer once. A commit only advances the cursor if it still holds the
index the selection was read at; assign_next reselects after losing that race.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ..core.errors import CursorConflictError, InvalidRequestError, PersistenceError
from ..core.observability import get_tracer
from ..core.policy import TierPolicy, default_tier_policy
from ..core.results import Failed, Found
from ..models.caterer import EligibleCaterer, SubscriptionTier, rotation_order_key
from ..models.round_robin import (
    RoundRobinAssignment,
    RoundRobinCommit,
    RoundRobinSelection,
    RoundRobinState,
)
from ..repositories.base import CatererDirectory, RoundRobinStateStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

MAX_ASSIGN_ATTEMPTS = 3


def normalize_city(city: str) -> str:
    return (city or "").lower().strip()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoundRobinScheduler:
    """
    Selects and commits round-robin assignments.

    Usage:
        scheduler = RoundRobinScheduler(repos.caterers, repos.round_robin)
        assignment = await scheduler.assign_next(35000, "Cape Town", limit=3)

    select_next and commit_assignment are the two halves of assign_next; a
    caller using them directly passes selection.start_index as
    expected_index so a stale selection is refused instead of committed.
    """

    def __init__(
        self,
        directory: CatererDirectory,
        state_store: RoundRobinStateStore,
        policy: Optional[TierPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: int = MAX_ASSIGN_ATTEMPTS,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.directory = directory
        self.state_store = state_store
        self.policy = policy or default_tier_policy()
        self.max_attempts = max_attempts
        self._clock = clock

    def get_tier_for_budget(self, total_budget: float) -> SubscriptionTier:
        return self.policy.get_tier_for_budget(total_budget)

    def can_receive_more_jobs(self, tier: SubscriptionTier, current_jobs_this_month: int) -> bool:
        cap = self.policy.monthly_cap(tier)
        return cap is None or current_jobs_this_month < cap

    def _under_cap(self, caterers: Iterable[EligibleCaterer]) -> list[EligibleCaterer]:
        return [
            c for c in caterers
            if self.can_receive_more_jobs(c.subscription_tier, c.jobs_received_this_month)
        ]

    async def _current_state(self, tier: SubscriptionTier, city: str) -> RoundRobinState:
        lookup = await self.state_store.get(tier, city)
        if isinstance(lookup, Found):
            return lookup.value
        if isinstance(lookup, Failed):
            raise PersistenceError(
                f"Could not read round-robin state for {tier.value}/{city}: {lookup.reason}"
            )
        return RoundRobinState(tier=tier, city=city)

    async def select_next(
        self, total_budget: float, city: str, limit: int = 5
    ) -> RoundRobinSelection:
        """
        Pick up to `limit` distinct caterers for a lead. Read-only.

        The returned start_index is the cursor the selection was made at.

        Raises:
            InvalidRequestError: Empty city, negative budget or non-positive limit
        """
        normalized = normalize_city(city)
        if not normalized:
            raise InvalidRequestError("city is required for round-robin selection")
        if total_budget < 0:
            raise InvalidRequestError("total_budget cannot be negative")
        if limit <= 0:
            raise InvalidRequestError("limit must be positive")

        tier = self.get_tier_for_budget(total_budget)

        with tracer.start_as_current_span("round_robin.select_next") as span:
            span.set_attribute("tier", tier.value)
            span.set_attribute("city", normalized)
            span.set_attribute("limit", limit)

            # Cursor first: a commit racing this read can only make it stale, never ahead
            start_index = (await self._current_state(tier, normalized)).assignment_index
            span.set_attribute("start_index", start_index)

            pool = self._under_cap(await self.directory.list_eligible(normalized, tier=tier))

            if not pool:
                fallback = self._under_cap(await self.directory.list_eligible(normalized))[:limit]
                span.set_attribute("fallback", True)
                logger.info(
                    f"No {tier.value} caterers in '{normalized}'; "
                    f"fallback selected {len(fallback)} from any tier"
                )
                return RoundRobinSelection(
                    tier=tier,
                    city=normalized,
                    start_index=start_index,
                    caterers=fallback,
                    fallback=True,
                    pool_size=len(fallback),
                )

            pool.sort(key=rotation_order_key)
            selected = [
                pool[(start_index + i) % len(pool)]
                for i in range(min(limit, len(pool)))
            ]

            span.set_attribute("fallback", False)
            span.set_attribute("pool_size", len(pool))
            return RoundRobinSelection(
                tier=tier,
                city=normalized,
                start_index=start_index,
                caterers=selected,
                fallback=False,
                pool_size=len(pool),
            )

    async def commit_assignment(
        self,
        tier: SubscriptionTier,
        city: str,
        caterer_ids: list[str],
        expected_index: Optional[int] = None,
    ) -> RoundRobinCommit:
        """
        Record that `caterer_ids` received the lead.

        Each caterer's monthly cap is re-checked against its current counter
        first; capped caterers are skipped. The cursor then advances by exactly
        the number of caterers committed, and each committed caterer gets
        last_job_assigned_at = now and one more job this month. With
        `expected_index` nothing is written unless the cursor still holds it.

        Raises:
            InvalidRequestError: Empty city
            CursorConflictError: The cursor moved away from `expected_index`
            AtomicityError: The cursor could not be advanced atomically
        """
        normalized = normalize_city(city)
        if not normalized:
            raise InvalidRequestError("city is required for round-robin commit")
        tier = SubscriptionTier(tier)

        with tracer.start_as_current_span("round_robin.commit_assignment") as span:
            span.set_attribute("tier", tier.value)
            span.set_attribute("city", normalized)

            requested = list(dict.fromkeys(caterer_ids))
            current = {c.id: c for c in await self.directory.get_eligible(requested)}
            assigned = [
                cid for cid in requested
                if cid in current
                and self.can_receive_more_jobs(
                    current[cid].subscription_tier, current[cid].jobs_received_this_month
                )
            ]
            skipped = [cid for cid in requested if cid not in assigned]
            if skipped:
                logger.warning(
                    f"Skipping {len(skipped)} caterer(s) at monthly cap or unknown: {skipped}"
                )

            span.set_attribute("assigned_count", len(assigned))
            span.set_attribute("skipped_count", len(skipped))

            if not assigned:
                state = await self._current_state(tier, normalized)
                return RoundRobinCommit(state=state, skipped_ids=skipped)

            # Stamps only after the cursor is ours, so a refused commit writes nothing
            state = await self.state_store.advance(
                tier, normalized, len(assigned), assigned[-1], expected_index=expected_index
            )
            await self.directory.record_assignment(assigned, self._clock())

            logger.info(
                f"Round-robin {tier.value}/{normalized} advanced to {state.assignment_index} "
                f"({len(assigned)} assigned)"
            )
            return RoundRobinCommit(state=state, assigned_ids=assigned, skipped_ids=skipped)

    async def assign_next(
        self, total_budget: float, city: str, limit: int = 5
    ) -> RoundRobinAssignment:
        """
        Select and commit in one step, safe against concurrent flows.

        The commit is conditional on the cursor the selection was read at.
        When another flow for the same (tier, city) commits in between, the
        selection is discarded and redone from the new cursor, so two flows
        never hand out the same slots.

        Raises:
            InvalidRequestError: Empty city, negative budget or non-positive limit
            CursorConflictError: Still losing the race after max_attempts
        """
        for attempt in range(1, self.max_attempts + 1):
            selection = await self.select_next(total_budget, city, limit)
            if not selection.caterers:
                return RoundRobinAssignment(selection=selection, attempts=attempt)
            try:
                commit = await self.commit_assignment(
                    selection.tier,
                    selection.city,
                    selection.caterer_ids,
                    expected_index=selection.start_index,
                )
            except CursorConflictError as e:
                logger.info(
                    f"Round-robin {selection.tier.value}/{selection.city} moved during "
                    f"attempt {attempt}: {e}"
                )
                continue
            return RoundRobinAssignment(selection=selection, commit=commit, attempts=attempt)

        raise CursorConflictError(
            f"Round-robin cursor for '{normalize_city(city)}' kept moving "
            f"after {self.max_attempts} attempts"
        )
