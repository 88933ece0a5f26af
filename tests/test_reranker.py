import pytest

from kai_matching.core.circuit_breaker import CircuitBreaker, CircuitState
from kai_matching.core.errors import (
    ModelCallError,
    ModelTimeoutError,
    ModelUnavailableError,
    SchemaValidationError,
)
from kai_matching.models import MatchSource, MatchStatus, OutcomeStatus, RequestStatus
from kai_matching.repositories import build_memory_repositories
from kai_matching.services.reranker import RANKING_SCHEMA_NAME, AIReRanker

from .conftest import ScriptedModel, make_caterer, make_request, rank_everyone, run


@pytest.fixture
def store():
    return build_memory_repositories(requests=[make_request()])


@pytest.fixture
def candidates():
    return [
        make_caterer("cat-a"),
        make_caterer("cat-b", average_rating=None, description="x" * 500),
        make_caterer("cat-c"),
    ]


def reranker_for(store, model, **kwargs):
    return AIReRanker(model=model, matches=store.matches, requests=store.requests, **kwargs)


def request_status(store, request_id="req-1"):
    return run(store.requests.get(request_id)).value.status


def test_ranks_and_persists_every_candidate(store, candidates):
    model = ScriptedModel(rank_everyone({"cat-a": 91, "cat-b": 40, "cat-c": 69.6}))
    result = run(reranker_for(store, model).rank(make_request(), candidates))

    assert result.status == OutcomeStatus.RANKED
    assert result.total_candidates == 3
    assert result.summary == "Strong Italian options in Cape Town"

    # 1. best first with 1-based ranks
    assert [m.caterer_id for m in result.matches] == ["cat-a", "cat-c", "cat-b"]
    assert [m.rank for m in result.matches] == [1, 2, 3]

    # 2. 69.6 is stored as 70 but stays below the threshold
    assert [m.score for m in result.matches] == [91, 70, 40]
    assert [m.status for m in result.matches] == [
        MatchStatus.PENDING,
        MatchStatus.LOW_MATCH,
        MatchStatus.LOW_MATCH,
    ]
    assert all(m.source == MatchSource.AI for m in result.matches)

    # 3. persisted and request moved on
    stored = run(store.matches.list_for_request("req-1"))
    assert {m.id for m in stored} == {"req-1:cat-a", "req-1:cat-b", "req-1:cat-c"}
    assert request_status(store) == RequestStatus.MATCHED


def test_model_receives_schema_and_prompt(store, candidates):
    model = ScriptedModel()
    run(reranker_for(store, model).rank(make_request(), candidates))

    call = model.calls[0]
    assert call["schema_name"] == RANKING_SCHEMA_NAME
    assert "rankings" in call["schema"]["properties"]
    assert "(ID: cat-b)" in call["prompt"]
    assert "Rating: New" in call["prompt"]
    assert "x" * 201 not in call["prompt"]
    assert "Budget: R10000 - R20000" in call["prompt"]


def test_empty_pool_never_calls_model(store):
    model = ScriptedModel()
    result = run(reranker_for(store, model).rank(make_request(), []))

    assert result.status == OutcomeStatus.NO_ELIGIBLE_CATERERS
    assert model.calls == []
    assert run(store.matches.list_for_request("req-1")) == []


def test_reranking_twice_overwrites(store, candidates):
    """Same (request, caterer) pair is stored once, with the latest score."""
    reranker = reranker_for(store, ScriptedModel(rank_everyone({"cat-a": 50})))
    run(reranker.rank(make_request(), candidates))

    reranker.model = ScriptedModel(rank_everyone({"cat-a": 95}))
    run(reranker.rank(make_request(), candidates))

    stored = run(store.matches.list_for_request("req-1"))
    assert len(stored) == 3
    assert {m.caterer_id: m.score for m in stored}["cat-a"] == 95


@pytest.mark.parametrize(
    "payload",
    [
        {"rankings": []},  # no summary
        {"rankings": [{"catererId": "cat-a", "score": 150, "reasons": []}], "summary": "ok"},
        {"rankings": "nope", "summary": "ok"},
        ["not", "an", "object"],
    ],
)
def test_schema_violation_writes_nothing(store, candidates, payload):
    reranker = reranker_for(store, ScriptedModel(payload))

    with pytest.raises(SchemaValidationError) as exc:
        run(reranker.rank(make_request(), candidates))

    assert exc.value.retryable is True
    assert exc.value.stage == "ai_rerank"
    assert run(store.matches.list_for_request("req-1")) == []
    assert request_status(store) == RequestStatus.PENDING


def _rankings(*ids):
    return {
        "rankings": [{"catererId": cid, "score": 80, "reasons": ["fit"]} for cid in ids],
        "summary": "ok",
    }


@pytest.mark.parametrize(
    "payload",
    [
        _rankings("cat-a", "cat-b"),                    # cat-c missing
        _rankings("cat-a", "cat-b", "cat-c", "ghost"),  # unknown caterer
        _rankings("cat-a", "cat-b", "cat-c", "cat-a"),  # duplicate
    ],
)
def test_rankings_must_cover_candidates_exactly(store, candidates, payload):
    with pytest.raises(SchemaValidationError):
        run(reranker_for(store, ScriptedModel(payload)).rank(make_request(), candidates))
    assert run(store.matches.list_for_request("req-1")) == []


def test_timeout_is_retryable_and_writes_nothing(store, candidates):
    reranker = reranker_for(store, ScriptedModel(delay=0.5), timeout_seconds=0.05)

    with pytest.raises(ModelTimeoutError) as exc:
        run(reranker.rank(make_request(), candidates))

    assert exc.value.retryable is True
    assert run(store.matches.list_for_request("req-1")) == []


def test_provider_failure_becomes_model_call_error(store, candidates):
    reranker = reranker_for(store, ScriptedModel(error=RuntimeError("503 from provider")))

    with pytest.raises(ModelCallError) as exc:
        run(reranker.rank(make_request(), candidates))

    assert not isinstance(exc.value, SchemaValidationError)
    assert "503" in str(exc.value)


def test_open_circuit_fails_fast(store, candidates):
    model = ScriptedModel(error=RuntimeError("boom"))
    breaker = CircuitBreaker(name="test", failure_threshold=1, timeout=60)
    reranker = reranker_for(store, model, breaker=breaker)

    with pytest.raises(ModelCallError):
        run(reranker.rank(make_request(), candidates))
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(ModelUnavailableError):
        run(reranker.rank(make_request(), candidates))

    # 1. second call never reached the provider
    assert len(model.calls) == 1


def test_timeouts_count_towards_the_breaker(store, candidates):
    breaker = CircuitBreaker(name="test", failure_threshold=2, timeout=60)
    reranker = reranker_for(store, ScriptedModel(delay=0.5), timeout_seconds=0.01, breaker=breaker)

    for _ in range(2):
        with pytest.raises(ModelTimeoutError):
            run(reranker.rank(make_request(), candidates))

    assert breaker.state == CircuitState.OPEN
