import pytest

from kai_matching.core.circuit_breaker import CircuitBreaker
from kai_matching.core.errors import InvalidRequestError, RequestNotFoundError
from kai_matching.models import (
    MatchSource,
    MatchStatus,
    OutcomeStatus,
    RequestStatus,
    SubscriptionTier,
)
from kai_matching.services.eval_store import EvalRecorder
from kai_matching.services.location_normalizer import LocationNormalizer
from kai_matching.services.matching_service import MatchingService
from kai_matching.services.reranker import AIReRanker

from .conftest import (
    FIXED_NOW,
    FailingEvalStore,
    ScriptedModel,
    caterer_ids_in,
    make_caterer,
    make_request,
    run,
)


def stored_matches(repos, request_id="req-1"):
    return run(repos.matches.list_for_request(request_id))


# ---- AI ranking ------------------------------------------------------------

def test_rank_with_ai_sends_only_eligible_caterers(build_service, repos, eval_store):
    model = ScriptedModel()
    outcome = run(build_service(model).rank_with_ai("req-1"))

    # 1. cat-c is priced above R200/person and never reaches the model
    assert caterer_ids_in(model.calls[0]["prompt"]) == ["cat-a", "cat-b"]

    assert outcome.status == OutcomeStatus.RANKED
    assert outcome.tier == SubscriptionTier.PRO
    assert outcome.total_candidates == 2
    assert {m.caterer_id for m in stored_matches(repos)} == {"cat-a", "cat-b"}

    # 2. one matching eval, stamped with the policy version
    (eval_,) = eval_store.matching_evals.values()
    assert eval_.request_id == "req-1"
    assert eval_.caterers_matched == 2
    assert eval_.policy_version


def test_rank_with_ai_shortlists_best_base_scores(repos, scheduler, eval_store):
    for i in range(5):
        repos.caterers.add(make_caterer(f"extra-{i}", average_rating=1))
    model = ScriptedModel()
    service = MatchingService(
        repos=repos,
        reranker=AIReRanker(model, repos.matches, repos.requests),
        scheduler=scheduler,
        recorder=EvalRecorder(eval_store),
        max_ai_candidates=2,
    )

    run(service.rank_with_ai("req-1"))

    # cat-a (rating 4.8, full cuisine match) beats every extra; cat-b has no italian
    assert caterer_ids_in(model.calls[0]["prompt"])[0] == "cat-a"
    assert len(caterer_ids_in(model.calls[0]["prompt"])) == 2


def test_rank_with_ai_no_eligible(build_service, repos):
    repos.requests.add(make_request("req-tiny", budget_min=0, budget_max=500))
    model = ScriptedModel()

    outcome = run(build_service(model).rank_with_ai("req-tiny"))

    assert outcome.status == OutcomeStatus.NO_ELIGIBLE_CATERERS
    assert model.calls == []


def test_rank_with_ai_model_failure_is_reported(build_service, repos):
    outcome = run(build_service(ScriptedModel(error=RuntimeError("429"))).rank_with_ai("req-1"))

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.stage == "ai_rerank"
    assert outcome.retryable is True
    assert stored_matches(repos) == []
    assert run(repos.requests.get("req-1")).value.status == RequestStatus.PENDING


def test_rank_with_ai_timeout_is_reported(build_service):
    service = build_service(ScriptedModel(delay=0.5), timeout_seconds=0.05)
    outcome = run(service.rank_with_ai("req-1"))

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.retryable is True


def test_eval_store_outage_does_not_fail_matching(build_service):
    outcome = run(build_service(store=FailingEvalStore()).rank_with_ai("req-1"))
    assert outcome.status == OutcomeStatus.RANKED


@pytest.mark.parametrize("request_id, error", [("", InvalidRequestError), ("nope", RequestNotFoundError)])
def test_bad_request_ids_raise(build_service, request_id, error):
    with pytest.raises(error):
        run(build_service().rank_with_ai(request_id))


# ---- deterministic scoring -------------------------------------------------

def test_score_deterministically(build_service, repos):
    outcome = run(build_service().score_deterministically("req-1", limit=1))

    assert outcome.status == OutcomeStatus.RANKED
    assert outcome.total_candidates == 2
    assert outcome.summary == "1 of 2 eligible caterers scored"

    (match,) = outcome.matches
    assert match.caterer_id == "cat-a"
    assert match.source == MatchSource.BASE_SCORE
    assert match.rank == 1
    assert match.status == MatchStatus.PENDING
    assert "Cuisine: 30.0/30" in match.reasons
    assert [m.id for m in stored_matches(repos)] == ["req-1:cat-a"]


def test_score_deterministically_uses_city_centre_when_no_coordinates(build_service):
    """Requests without coordinates still earn distance points from their city."""
    outcome = run(build_service().score_deterministically("req-1"))
    top = outcome.matches[0]
    assert "Distance: 15.0/15" in top.reasons


def test_score_deterministically_rejects_bad_limit(build_service):
    with pytest.raises(InvalidRequestError):
        run(build_service().score_deterministically("req-1", limit=0))


# ---- round-robin -----------------------------------------------------------

def test_assign_round_robin_in_tier(build_service, repos):
    repos.requests.add(make_request("req-basic", budget_max=15000, guest_count=100))

    outcome = run(build_service().assign_round_robin("req-basic", limit=2))

    assert outcome.status == OutcomeStatus.ASSIGNED
    assert outcome.tier == SubscriptionTier.BASIC
    assert outcome.fallback is False
    assert outcome.total_candidates == 3
    assert [m.caterer_id for m in outcome.matches] == ["cat-a", "cat-b"]
    assert all(m.source == MatchSource.ROUND_ROBIN for m in outcome.matches)
    assert all(m.status == MatchStatus.PENDING for m in outcome.matches)

    # 1. caterers stamped, cursor advanced
    assert repos.caterers.profile("cat-a").last_job_assigned_at == FIXED_NOW
    state = run(repos.round_robin.get(SubscriptionTier.BASIC, "cape town")).value
    assert state.assignment_index == 2
    assert run(repos.requests.get("req-basic")).value.status == RequestStatus.MATCHED


def test_assign_round_robin_falls_back_across_tiers(build_service):
    # R20000 total is PRO territory and every caterer here is BASIC
    outcome = run(build_service().assign_round_robin("req-1", limit=5))

    assert outcome.status == OutcomeStatus.ASSIGNED
    assert outcome.tier == SubscriptionTier.PRO
    assert outcome.fallback is True
    assert len(outcome.matches) == 3


def test_assign_round_robin_resolves_city_aliases(build_service, repos, eval_store):
    repos.requests.add(make_request("req-cpt", city="CPT", budget_max=15000))
    service = build_service()
    service.normalizer = LocationNormalizer(
        recorder=EvalRecorder(eval_store),
        breaker=CircuitBreaker(name="test-location", failure_threshold=5, timeout=60),
    )

    outcome = run(service.assign_round_robin("req-cpt", limit=1))

    assert outcome.status == OutcomeStatus.ASSIGNED
    assert outcome.matches[0].caterer_id == "cat-a"


def test_assign_round_robin_no_caterers_in_city(build_service, repos):
    repos.requests.add(make_request("req-dbn", city="Durban"))
    outcome = run(build_service().assign_round_robin("req-dbn"))
    assert outcome.status == OutcomeStatus.NO_ELIGIBLE_CATERERS


def test_assign_round_robin_requires_city(build_service, repos):
    repos.requests.add(make_request("req-nowhere", city=""))
    with pytest.raises(InvalidRequestError):
        run(build_service().assign_round_robin("req-nowhere"))


# ---- request status --------------------------------------------------------

class StatusSpyModel(ScriptedModel):
    """Notes the request status at the moment the model is consulted."""

    def __init__(self, requests):
        super().__init__()
        self.requests = requests
        self.statuses = []

    async def generate_json(self, prompt, schema, schema_name):
        self.statuses.append((await self.requests.get("req-1")).value.status)
        return await super().generate_json(prompt, schema, schema_name)


def request_status(repos, request_id):
    return run(repos.requests.get(request_id)).value.status


def test_request_is_matching_while_the_pass_runs(build_service, repos):
    model = StatusSpyModel(repos.requests)

    run(build_service(model).rank_with_ai("req-1"))

    assert model.statuses == [RequestStatus.MATCHING]
    assert request_status(repos, "req-1") == RequestStatus.MATCHED


@pytest.mark.parametrize(
    "request_kwargs, pass_name",
    [
        ({"budget_min": 0, "budget_max": 500}, "rank_with_ai"),
        ({"budget_min": 0, "budget_max": 500}, "score_deterministically"),
        ({"city": "Durban"}, "assign_round_robin"),
    ],
)
def test_pass_without_matches_restores_status(build_service, repos, request_kwargs, pass_name):
    repos.requests.add(make_request("req-none", **request_kwargs))

    outcome = run(getattr(build_service(), pass_name)("req-none"))

    assert outcome.status == OutcomeStatus.NO_ELIGIBLE_CATERERS
    assert request_status(repos, "req-none") == RequestStatus.PENDING
