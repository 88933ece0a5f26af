import asyncio
import copy
import re
from datetime import datetime, timedelta, timezone

import pytest

from kai_matching.core.circuit_breaker import CircuitBreaker
from kai_matching.models import CatererProfile, EventRequest, GeoPoint, SubscriptionTier
from kai_matching.repositories import build_memory_repositories
from kai_matching.services.eval_store import EvalRecorder, InMemoryEvalStore
from kai_matching.services.reranker import AIReRanker
from kai_matching.services.round_robin import RoundRobinScheduler
from kai_matching.services.matching_service import MatchingService

CAPE_TOWN = GeoPoint(lat=-33.9249, lng=18.4241)
FIXED_NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)

_ID_PATTERN = re.compile(r"\(ID: ([^)]+)\)")


def run(coro):
    return asyncio.run(coro)


def caterer_ids_in(prompt: str) -> list[str]:
    return _ID_PATTERN.findall(prompt)


def rank_everyone(scores=None, summary="Strong Italian options in Cape Town"):
    """Responder that ranks every caterer named in the prompt."""
    scores = scores or {}

    def respond(prompt):
        return {
            "rankings": [
                {
                    "catererId": cid,
                    "score": scores.get(cid, 80),
                    "reasons": [f"{cid} fits the event"],
                    "concerns": [],
                }
                for cid in caterer_ids_in(prompt)
            ],
            "summary": summary,
        }

    return respond


class ScriptedModel:
    """
    Fake generative model.

    `response` is either a dict returned as-is or a callable taking the prompt.
    """

    def __init__(self, response=None, delay: float = 0, error: Exception = None):
        self.response = response if response is not None else rank_everyone()
        self.delay = delay
        self.error = error
        self.calls = []

    async def generate_json(self, prompt, schema, schema_name):
        self.calls.append({"prompt": prompt, "schema": schema, "schema_name": schema_name})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.response):
            return self.response(prompt)
        return copy.deepcopy(self.response)


class FailingEvalStore(InMemoryEvalStore):
    """Every write and learned lookup blows up."""

    async def log_location_eval(self, eval_):
        raise ConnectionError("redis down")

    async def log_matching_eval(self, eval_):
        raise ConnectionError("redis down")

    async def get_learned_location(self, alias):
        raise ConnectionError("redis down")


def make_caterer(caterer_id: str, **overrides) -> CatererProfile:
    fields = dict(
        id=caterer_id,
        business_name=f"Caterer {caterer_id}",
        cuisines=["italian", "mexican"],
        service_styles=["buffet"],
        min_guests=10,
        max_guests=200,
        min_price_per_person=100,
        max_price_per_person=300,
        average_rating=4.0,
        description="Wood-fired pizza and tacos for every occasion.",
        location=CAPE_TOWN,
        city="Cape Town",
        subscription_tier=SubscriptionTier.BASIC,
    )
    fields.update(overrides)
    return CatererProfile(**fields)


def make_request(request_id: str = "req-1", **overrides) -> EventRequest:
    fields = dict(
        id=request_id,
        customer_id="cust-1",
        cuisines=["italian"],
        guest_count=100,
        budget_min=10000,
        budget_max=20000,
        event_type="wedding",
        service_style="buffet",
        city="Cape Town",
        state="Western Cape",
    )
    fields.update(overrides)
    return EventRequest(**fields)


@pytest.fixture
def yesterday():
    return FIXED_NOW - timedelta(days=1)


@pytest.fixture
def eval_store():
    return InMemoryEvalStore()


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def repos():
    caterers = [
        make_caterer("cat-a", average_rating=4.8),
        make_caterer("cat-b", cuisines=["indian"], average_rating=None),
        make_caterer("cat-c", min_price_per_person=500, max_price_per_person=900),
    ]
    return build_memory_repositories(caterers=caterers, requests=[make_request()])


@pytest.fixture
def scheduler(repos):
    return RoundRobinScheduler(repos.caterers, repos.round_robin, clock=lambda: FIXED_NOW)


@pytest.fixture
def build_service(repos, scheduler, eval_store):
    def _build(model=None, store=None, timeout_seconds=1.0, breaker=None):
        reranker = AIReRanker(
            model=model or ScriptedModel(),
            matches=repos.matches,
            requests=repos.requests,
            timeout_seconds=timeout_seconds,
            breaker=breaker or CircuitBreaker(name="test-model", failure_threshold=5, timeout=60),
        )
        return MatchingService(
            repos=repos,
            reranker=reranker,
            scheduler=scheduler,
            recorder=EvalRecorder(store or eval_store),
        )

    return _build
