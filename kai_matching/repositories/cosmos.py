"""
Azure Cosmos DB implementations of the store interfaces.

Containers (database `settings.cosmos_database`):
- caterers            partition key /id
- event-requests      partition key /id
- matches             partition key /request_id, id "{request_id}:{caterer_id}"
- round-robin-state   partition key /id, id "{tier}:{city}"

Atomicity comes from single-document patch operations (cursor increments,
job counters) and transactional batches within one request partition
(accepting a match).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from azure.core.credentials import TokenCredential
from azure.cosmos import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import (
    CosmosBatchOperationError,
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)
from azure.identity import DefaultAzureCredential

from ..core.config import Settings
from ..core.errors import (
    AtomicityError,
    CursorConflictError,
    MatchConflictError,
    MatchNotFoundError,
    PersistenceError,
)
from ..core.observability import get_tracer
from ..core.results import Failed, Found, Lookup, NotFound
from ..models.caterer import (
    CatererProfile,
    EligibleCaterer,
    SubscriptionTier,
    assignment_order_key,
)
from ..models.event_request import EventRequest, RequestStatus
from ..models.match import Match, MatchStatus
from ..models.round_robin import RoundRobinState, state_id_for
from .base import Repositories

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Transactional batches are limited to 100 operations per partition
MAX_BATCH_OPERATIONS = 100

# Status Cosmos returns when a patch filter predicate does not match
PRECONDITION_FAILED = 412

ELIGIBLE_FIELDS = (
    "c.id, c.business_name, c.subscription_tier, c.last_job_assigned_at, "
    "c.jobs_received_this_month, c.city"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CosmosCatererDirectory:
    def __init__(self, container: ContainerProxy):
        self.container = container

    async def find_candidates(
        self, guest_count: int, budget_per_person: float
    ) -> list[CatererProfile]:
        with tracer.start_as_current_span("cosmos.caterers.find_candidates") as span:
            span.set_attribute("guest_count", guest_count)
            query = """
                SELECT * FROM c
                WHERE c.is_active = true
                AND c.subscription_status = 'active'
                AND c.max_guests >= @guest_count
                AND c.min_price_per_person <= @budget_per_person
            """
            items = list(
                self.container.query_items(
                    query=query,
                    parameters=[
                        {"name": "@guest_count", "value": guest_count},
                        {"name": "@budget_per_person", "value": budget_per_person},
                    ],
                    enable_cross_partition_query=True,
                )
            )
            span.set_attribute("candidate_count", len(items))
            return [CatererProfile.model_validate(item) for item in items]

    async def list_eligible(
        self,
        city: str,
        tier: Optional[SubscriptionTier] = None,
        limit: Optional[int] = None,
    ) -> list[EligibleCaterer]:
        # Cosmos ORDER BY skips documents without last_job_assigned_at, so sort here
        query = f"""
            SELECT {ELIGIBLE_FIELDS} FROM c
            WHERE c.subscription_status = 'active'
            AND c.is_active = true
            AND CONTAINS(LOWER(c.city), @city)
        """
        parameters: list[dict[str, Any]] = [{"name": "@city", "value": city}]
        if tier is not None:
            query += " AND c.subscription_tier = @tier"
            parameters.append({"name": "@tier", "value": SubscriptionTier(tier).value})
        items = self.container.query_items(
            query=query, parameters=parameters, enable_cross_partition_query=True
        )
        pool = sorted(
            (EligibleCaterer.model_validate(item) for item in items), key=assignment_order_key
        )
        return pool[:limit] if limit is not None else pool

    async def get_eligible(self, caterer_ids: Iterable[str]) -> list[EligibleCaterer]:
        ids = list(caterer_ids)
        if not ids:
            return []
        items = self.container.query_items(
            query=f"SELECT {ELIGIBLE_FIELDS} FROM c WHERE ARRAY_CONTAINS(@ids, c.id)",
            parameters=[{"name": "@ids", "value": ids}],
            enable_cross_partition_query=True,
        )
        by_id = {item["id"]: EligibleCaterer.model_validate(item) for item in items}
        return [by_id[cid] for cid in ids if cid in by_id]

    async def record_assignment(self, caterer_ids: Iterable[str], assigned_at: datetime) -> None:
        for caterer_id in caterer_ids:
            try:
                self.container.patch_item(
                    item=caterer_id,
                    partition_key=caterer_id,
                    patch_operations=[
                        {"op": "set", "path": "/last_job_assigned_at", "value": assigned_at.isoformat()},
                        {"op": "incr", "path": "/jobs_received_this_month", "value": 1},
                    ],
                )
            except CosmosResourceNotFoundError:
                logger.warning(f"record_assignment: caterer {caterer_id} not found")
            except CosmosHttpResponseError as e:
                raise PersistenceError(
                    f"Failed to record assignment for caterer {caterer_id}: {e}"
                ) from e


class CosmosEventRequestStore:
    def __init__(self, container: ContainerProxy):
        self.container = container

    async def get(self, request_id: str) -> Lookup[EventRequest]:
        try:
            item = self.container.read_item(item=request_id, partition_key=request_id)
        except CosmosResourceNotFoundError:
            return NotFound(request_id)
        except CosmosHttpResponseError as e:
            logger.error(f"Failed to read event request {request_id}: {e}")
            return Failed(reason=str(e), stage="load_request")
        return Found(EventRequest.model_validate(item))

    async def update_status(self, request_id: str, status: RequestStatus) -> None:
        try:
            self.container.patch_item(
                item=request_id,
                partition_key=request_id,
                patch_operations=[
                    {"op": "set", "path": "/status", "value": status.value},
                    {"op": "set", "path": "/updated_at", "value": _now_iso()},
                ],
            )
        except CosmosHttpResponseError as e:
            raise PersistenceError(
                f"Failed to set request {request_id} status to {status.value}: {e}"
            ) from e


class CosmosMatchRepository:
    def __init__(self, container: ContainerProxy):
        self.container = container

    async def upsert_many(self, matches: list[Match]) -> None:
        with tracer.start_as_current_span("cosmos.matches.upsert_many") as span:
            span.set_attribute("match_count", len(matches))
            for match in matches:
                body = match.model_dump(mode="json")
                body["updated_at"] = _now_iso()
                try:
                    self.container.upsert_item(body=body)
                except CosmosHttpResponseError as e:
                    raise PersistenceError(f"Failed to upsert match {match.id}: {e}") from e

    def _find(self, match_id: str) -> Optional[dict[str, Any]]:
        items = list(
            self.container.query_items(
                query="SELECT * FROM c WHERE c.id = @id",
                parameters=[{"name": "@id", "value": match_id}],
                enable_cross_partition_query=True,
            )
        )
        return items[0] if items else None

    async def get(self, match_id: str) -> Lookup[Match]:
        try:
            item = self._find(match_id)
        except CosmosHttpResponseError as e:
            return Failed(reason=str(e), stage="load_match")
        if item is None:
            return NotFound(match_id)
        return Found(Match.model_validate(item))

    async def list_for_request(self, request_id: str) -> list[Match]:
        items = self.container.query_items(
            query="SELECT * FROM c WHERE c.request_id = @request_id",
            parameters=[{"name": "@request_id", "value": request_id}],
            partition_key=request_id,
        )
        return [Match.model_validate(item) for item in items]

    async def accept(self, match_id: str) -> list[Match]:
        with tracer.start_as_current_span("cosmos.matches.accept") as span:
            span.set_attribute("match_id", match_id)

            target = self._find(match_id)
            if target is None:
                raise MatchNotFoundError(f"Match {match_id} not found")
            request_id = target["request_id"]

            docs = list(
                self.container.query_items(
                    query="SELECT * FROM c WHERE c.request_id = @request_id",
                    parameters=[{"name": "@request_id", "value": request_id}],
                    partition_key=request_id,
                )
            )
            if len(docs) > MAX_BATCH_OPERATIONS:
                raise AtomicityError(
                    f"Request {request_id} has {len(docs)} matches, "
                    f"more than one transactional batch can update"
                )

            now = _now_iso()
            operations = []
            for doc in docs:
                if doc["id"] == match_id:
                    if doc["status"] == MatchStatus.DECLINED.value:
                        raise MatchConflictError(f"Match {match_id} was declined")
                    new_status = MatchStatus.ACCEPTED.value
                else:
                    if doc["status"] == MatchStatus.ACCEPTED.value:
                        raise MatchConflictError(
                            f"Request {request_id} already has an accepted match"
                        )
                    new_status = MatchStatus.DECLINED.value
                body = {k: v for k, v in doc.items() if not k.startswith("_")}
                body["status"] = new_status
                body["updated_at"] = now
                # The etag guard makes a concurrent accept on any sibling fail the whole batch
                operations.append(("replace", (doc["id"], body), {"if_match_etag": doc["_etag"]}))

            try:
                self.container.execute_item_batch(
                    batch_operations=operations, partition_key=request_id
                )
            except CosmosBatchOperationError as e:
                span.set_attribute("conflict", True)
                raise MatchConflictError(
                    f"Concurrent update on request {request_id} while accepting {match_id}"
                ) from e
            except CosmosHttpResponseError as e:
                raise PersistenceError(f"Failed to accept match {match_id}: {e}") from e

            updated = [Match.model_validate(body) for _, (_, body), _ in operations]
            return sorted(updated, key=lambda m: m.id != match_id)

    async def update_status(self, match_id: str, status: MatchStatus) -> Match:
        if status == MatchStatus.ACCEPTED:
            raise MatchConflictError("use accept() to accept a match")
        doc = self._find(match_id)
        if doc is None:
            raise MatchNotFoundError(f"Match {match_id} not found")
        try:
            updated = self.container.patch_item(
                item=match_id,
                partition_key=doc["request_id"],
                patch_operations=[
                    {"op": "set", "path": "/status", "value": status.value},
                    {"op": "set", "path": "/updated_at", "value": _now_iso()},
                ],
            )
        except CosmosHttpResponseError as e:
            raise PersistenceError(f"Failed to update match {match_id}: {e}") from e
        return Match.model_validate(updated)


class CosmosRoundRobinStateStore:
    def __init__(self, container: ContainerProxy):
        self.container = container

    async def get(self, tier: SubscriptionTier, city: str) -> Lookup[RoundRobinState]:
        state_id = state_id_for(tier, city)
        try:
            item = self.container.read_item(item=state_id, partition_key=state_id)
        except CosmosResourceNotFoundError:
            return NotFound(state_id)
        except CosmosHttpResponseError as e:
            return Failed(reason=str(e), stage="load_round_robin_state")
        return Found(RoundRobinState.model_validate(item))

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
        state_id = state_id_for(tier, city)
        operations = [
            {"op": "incr", "path": "/assignment_index", "value": count},
            {"op": "set", "path": "/updated_at", "value": _now_iso()},
        ]
        if last_caterer_id:
            operations.append(
                {"op": "set", "path": "/last_assigned_caterer_id", "value": last_caterer_id}
            )
        predicate = None
        if expected_index is not None:
            predicate = f"FROM c WHERE c.assignment_index = {int(expected_index)}"

        with tracer.start_as_current_span("cosmos.round_robin.advance") as span:
            span.set_attribute("state_id", state_id)
            span.set_attribute("count", count)
            try:
                try:
                    doc = self._patch(state_id, operations, predicate)
                except CosmosResourceNotFoundError:
                    if expected_index not in (None, 0):
                        raise CursorConflictError(
                            f"Cursor {state_id} is missing, expected {expected_index}"
                        )
                    doc = self._create_or_patch(
                        tier, city, count, last_caterer_id, operations, predicate
                    )
            except CosmosHttpResponseError as e:
                if e.status_code == PRECONDITION_FAILED:
                    raise CursorConflictError(
                        f"Cursor {state_id} moved past {expected_index}"
                    ) from e
                raise AtomicityError(
                    f"Failed to advance round-robin cursor {state_id}: {e}"
                ) from e
            return RoundRobinState.model_validate(doc)

    def _patch(
        self, state_id: str, operations: list[dict[str, Any]], predicate: Optional[str] = None
    ) -> dict[str, Any]:
        return self.container.patch_item(
            item=state_id,
            partition_key=state_id,
            patch_operations=operations,
            filter_predicate=predicate,
        )

    def _create_or_patch(
        self,
        tier: SubscriptionTier,
        city: str,
        count: int,
        last_caterer_id: Optional[str],
        operations: list[dict[str, Any]],
        predicate: Optional[str],
    ) -> dict[str, Any]:
        state = RoundRobinState(
            tier=tier, city=city, assignment_index=count, last_assigned_caterer_id=last_caterer_id
        )
        body = state.model_dump(mode="json")
        body["id"] = state.id
        try:
            return self.container.create_item(body=body)
        except CosmosResourceExistsError:
            # Another writer created the state first; apply our increment on top,
            # still guarded when the caller expected a fresh cursor
            return self._patch(state.id, operations, predicate)


def build_cosmos_repositories(
    settings: Settings, credential: TokenCredential | None = None
) -> Repositories:
    """Create Cosmos-backed stores for all four containers."""
    if not settings.cosmos_db_endpoint:
        raise ValueError("COSMOS_DB_ENDPOINT environment variable not set")

    client = CosmosClient(
        url=settings.cosmos_db_endpoint, credential=credential or DefaultAzureCredential()
    )
    database = client.get_database_client(settings.cosmos_database)
    logger.info(f"Cosmos repositories initialized for database '{settings.cosmos_database}'")
    return Repositories(
        caterers=CosmosCatererDirectory(database.get_container_client("caterers")),
        requests=CosmosEventRequestStore(database.get_container_client("event-requests")),
        matches=CosmosMatchRepository(database.get_container_client("matches")),
        round_robin=CosmosRoundRobinStateStore(database.get_container_client("round-robin-state")),
    )
