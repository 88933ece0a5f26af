from datetime import datetime, timezone

import pytest
from azure.cosmos.exceptions import (
    CosmosBatchOperationError,
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosResourceNotFoundError,
)

from kai_matching.core.errors import (
    AtomicityError,
    CursorConflictError,
    MatchConflictError,
    MatchNotFoundError,
)
from kai_matching.core.results import Failed, Found, NotFound
from kai_matching.models import MatchStatus, SubscriptionTier
from kai_matching.repositories.cosmos import (
    CosmosCatererDirectory,
    CosmosEventRequestStore,
    CosmosMatchRepository,
    CosmosRoundRobinStateStore,
)

from .conftest import run


class FakeContainer:
    """
    Records calls and replays scripted results.

    Each scripted entry is either a value to return or an exception to raise.
    """

    def __init__(self, patch=(), create=(), read=(), query=(), batch=()):
        self.scripts = {
            "patch_item": list(patch),
            "create_item": list(create),
            "read_item": list(read),
            "query_items": list(query),
            "execute_item_batch": list(batch),
        }
        self.calls = []

    def _next(self, name, kwargs):
        self.calls.append((name, kwargs))
        result = self.scripts[name].pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def patch_item(self, **kwargs):
        return self._next("patch_item", kwargs)

    def create_item(self, **kwargs):
        return self._next("create_item", kwargs)

    def read_item(self, **kwargs):
        return self._next("read_item", kwargs)

    def query_items(self, **kwargs):
        return self._next("query_items", kwargs)

    def execute_item_batch(self, **kwargs):
        return self._next("execute_item_batch", kwargs)

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]


def not_found():
    return CosmosResourceNotFoundError(status_code=404, message="missing")


def state_doc(index, last=None):
    return {
        "id": "basic:cape town",
        "tier": "basic",
        "city": "cape town",
        "assignment_index": index,
        "last_assigned_caterer_id": last,
        "updated_at": "2025-03-14T12:00:00+00:00",
        "_etag": '"1"',
    }


def match_doc(caterer_id, status="pending"):
    return {
        "id": f"req-1:{caterer_id}",
        "request_id": "req-1",
        "caterer_id": caterer_id,
        "score": 80,
        "status": status,
        "source": "ai",
        "_etag": f'"etag-{caterer_id}"',
        "_rid": "rid",
    }


# ---- round-robin cursor ----------------------------------------------------

def test_advance_patches_existing_state():
    container = FakeContainer(patch=[state_doc(5, "C2")])
    store = CosmosRoundRobinStateStore(container)

    state = run(store.advance(SubscriptionTier.BASIC, "cape town", 2, "C2"))

    assert state.assignment_index == 5
    ops = container.called("patch_item")[0]["patch_operations"]
    assert {"op": "incr", "path": "/assignment_index", "value": 2} in ops
    assert container.called("create_item") == []


def test_advance_creates_state_on_first_use():
    container = FakeContainer(patch=[not_found()], create=[state_doc(3, "C3")])
    store = CosmosRoundRobinStateStore(container)

    state = run(store.advance(SubscriptionTier.BASIC, "cape town", 3, "C3"))

    body = container.called("create_item")[0]["body"]
    assert body["id"] == "basic:cape town"
    assert body["assignment_index"] == 3
    assert state.assignment_index == 3


def test_advance_loses_create_race_and_increments():
    """Another writer created the state between our patch and create."""
    container = FakeContainer(
        patch=[not_found(), state_doc(4, "C1")],
        create=[CosmosResourceExistsError(status_code=409, message="exists")],
    )
    store = CosmosRoundRobinStateStore(container)

    state = run(store.advance(SubscriptionTier.BASIC, "cape town", 2, "C1"))

    assert state.assignment_index == 4
    assert len(container.called("patch_item")) == 2


def test_advance_fails_loudly_when_store_errors():
    container = FakeContainer(patch=[CosmosHttpResponseError(status_code=503, message="busy")])
    store = CosmosRoundRobinStateStore(container)

    with pytest.raises(AtomicityError):
        run(store.advance(SubscriptionTier.BASIC, "cape town", 1, "C1"))


def test_conditional_advance_filters_on_expected_index():
    container = FakeContainer(patch=[state_doc(6, "C2")])
    store = CosmosRoundRobinStateStore(container)

    state = run(store.advance(SubscriptionTier.BASIC, "cape town", 2, "C2", expected_index=4))

    assert state.assignment_index == 6
    call = container.called("patch_item")[0]
    assert call["filter_predicate"] == "FROM c WHERE c.assignment_index = 4"


def test_conditional_advance_conflicts_when_cursor_moved():
    container = FakeContainer(
        patch=[CosmosHttpResponseError(status_code=412, message="precondition failed")]
    )
    store = CosmosRoundRobinStateStore(container)

    with pytest.raises(CursorConflictError):
        run(store.advance(SubscriptionTier.BASIC, "cape town", 2, "C2", expected_index=4))


def test_conditional_advance_on_missing_state():
    # 1. a fresh cursor may be created when the selection was made at 0
    container = FakeContainer(patch=[not_found()], create=[state_doc(1, "C1")])
    store = CosmosRoundRobinStateStore(container)
    assert run(store.advance(SubscriptionTier.BASIC, "cape town", 1, "C1", expected_index=0)).assignment_index == 1

    # 2. a selection made at a later index cannot have come from a missing state
    container = FakeContainer(patch=[not_found()])
    store = CosmosRoundRobinStateStore(container)
    with pytest.raises(CursorConflictError):
        run(store.advance(SubscriptionTier.BASIC, "cape town", 1, "C1", expected_index=3))
    assert container.called("create_item") == []


def test_conditional_advance_loses_create_race():
    container = FakeContainer(
        patch=[not_found(), CosmosHttpResponseError(status_code=412, message="precondition failed")],
        create=[CosmosResourceExistsError(status_code=409, message="exists")],
    )
    store = CosmosRoundRobinStateStore(container)

    with pytest.raises(CursorConflictError):
        run(store.advance(SubscriptionTier.BASIC, "cape town", 2, "C1", expected_index=0))
    assert container.called("patch_item")[1]["filter_predicate"] == "FROM c WHERE c.assignment_index = 0"


def test_state_lookup_results():
    container = FakeContainer(
        read=[state_doc(7), not_found(), CosmosHttpResponseError(status_code=500, message="x")]
    )
    store = CosmosRoundRobinStateStore(container)

    found = run(store.get(SubscriptionTier.BASIC, "cape town"))
    assert isinstance(found, Found) and found.value.assignment_index == 7
    assert isinstance(run(store.get(SubscriptionTier.BASIC, "cape town")), NotFound)
    assert isinstance(run(store.get(SubscriptionTier.BASIC, "cape town")), Failed)


# ---- match acceptance ------------------------------------------------------

def test_accept_uses_etag_guarded_batch():
    docs = [match_doc("cat-a"), match_doc("cat-b"), match_doc("cat-c")]
    container = FakeContainer(query=[[docs[1]], docs], batch=[[]])
    repo = CosmosMatchRepository(container)

    updated = run(repo.accept("req-1:cat-b"))

    # 1. accepted match first, siblings declined
    assert updated[0].id == "req-1:cat-b"
    assert updated[0].status == MatchStatus.ACCEPTED
    assert {m.status for m in updated[1:]} == {MatchStatus.DECLINED}

    # 2. one batch in the request partition, every replace guarded by its etag
    batch = container.called("execute_item_batch")[0]
    assert batch["partition_key"] == "req-1"
    for op, (item_id, body), options in batch["batch_operations"]:
        assert op == "replace"
        assert options["if_match_etag"] == f'"etag-{body["caterer_id"]}"'
        assert not any(key.startswith("_") for key in body)


def test_accept_conflicts_when_batch_precondition_fails():
    docs = [match_doc("cat-a"), match_doc("cat-b")]
    container = FakeContainer(
        query=[[docs[0]], docs],
        batch=[CosmosBatchOperationError(error_index=1, headers={}, status_code=412, message="etag")],
    )
    repo = CosmosMatchRepository(container)

    with pytest.raises(MatchConflictError):
        run(repo.accept("req-1:cat-a"))


def test_accept_conflicts_when_sibling_already_accepted():
    docs = [match_doc("cat-a", status="accepted"), match_doc("cat-b")]
    container = FakeContainer(query=[[docs[1]], docs])
    repo = CosmosMatchRepository(container)

    with pytest.raises(MatchConflictError):
        run(repo.accept("req-1:cat-b"))
    assert container.called("execute_item_batch") == []


def test_accept_unknown_match():
    repo = CosmosMatchRepository(FakeContainer(query=[[]]))
    with pytest.raises(MatchNotFoundError):
        run(repo.accept("req-1:ghost"))


# ---- caterers and requests -------------------------------------------------

def eligible_doc(caterer_id, **fields):
    doc = {
        "id": caterer_id,
        "business_name": caterer_id.title(),
        "subscription_tier": "pro",
        "jobs_received_this_month": 0,
        "city": "Cape Town",
    }
    doc.update(fields)
    return doc


def test_list_eligible_keeps_caterers_without_assignment_field():
    container = FakeContainer(
        query=[
            [
                eligible_doc("C2", last_job_assigned_at="2025-03-13T09:00:00+00:00"),
                eligible_doc("C1"),
                eligible_doc("C3", last_job_assigned_at="2025-03-01T09:00:00+00:00"),
                eligible_doc("C4", last_job_assigned_at=None),
            ]
        ]
    )
    directory = CosmosCatererDirectory(container)

    result = run(directory.list_eligible("cape town", tier=SubscriptionTier.PRO, limit=3))

    # 1. never-assigned first whether the field is missing or null, then oldest
    assert [c.id for c in result] == ["C1", "C4", "C3"]

    # 2. ordering happens after the query, which has no ORDER BY to drop documents
    call = container.called("query_items")[0]
    assert "ORDER BY" not in call["query"]
    assert {"name": "@tier", "value": "pro"} in call["parameters"]


def test_record_assignment_increments_counter():
    container = FakeContainer(patch=[{}, not_found()])
    directory = CosmosCatererDirectory(container)
    at = datetime(2025, 3, 14, tzinfo=timezone.utc)

    run(directory.record_assignment(["C1", "gone"], at))

    ops = container.called("patch_item")[0]["patch_operations"]
    assert {"op": "incr", "path": "/jobs_received_this_month", "value": 1} in ops
    assert {"op": "set", "path": "/last_job_assigned_at", "value": at.isoformat()} in ops


def test_request_lookup_failure_is_reported():
    container = FakeContainer(read=[not_found(), CosmosHttpResponseError(status_code=500, message="x")])
    store = CosmosEventRequestStore(container)

    assert isinstance(run(store.get("req-1")), NotFound)
    failed = run(store.get("req-1"))
    assert isinstance(failed, Failed)
    assert failed.stage == "load_request"
