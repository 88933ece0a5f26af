import pytest

from kai_matching.core.circuit_breaker import CircuitBreaker
from kai_matching.core.errors import InvalidRequestError
from kai_matching.models import (
    BudgetType,
    Confidence,
    LearnedBy,
    LearnedLocation,
    LocationSource,
)
from kai_matching.services.eval_store import EvalRecorder
from kai_matching.services.location_normalizer import LocationNormalizer, calculate_total_budget

from .conftest import FailingEvalStore, ScriptedModel, run

MOTHER_CITY = {
    "city": "Cape Town",
    "province": "Western Cape",
    "latitude": -33.92,
    "longitude": 18.42,
    "confidence": "high",
    "original_input": "ignored",
}


@pytest.fixture
def normalizer_for(eval_store):
    def _build(model=None, store=None):
        return LocationNormalizer(
            recorder=EvalRecorder(store or eval_store),
            model=model,
            timeout_seconds=0.2,
            breaker=CircuitBreaker(name="test-location", failure_threshold=5, timeout=60),
        )

    return _build


def only_eval(store):
    (eval_,) = store.location_evals.values()
    return eval_


def test_known_alias(normalizer_for, eval_store):
    result = run(normalizer_for().normalize("  Jozi "))

    assert result.city == "Johannesburg"
    assert result.province == "Gauteng"
    assert result.confidence == Confidence.HIGH
    assert result.original_input == "  Jozi "
    assert only_eval(eval_store).source == LocationSource.ALIAS


def test_learned_alias_wins_and_is_counted(normalizer_for, eval_store):
    run(
        eval_store.learn_location(
            LearnedLocation(alias="jozi", city="Soweto", province="Gauteng", lat=-26.24, lng=27.85)
        )
    )

    result = run(normalizer_for().normalize("JOZI"))

    assert result.city == "Soweto"
    assert only_eval(eval_store).source == LocationSource.LEARNED
    assert eval_store.learned["jozi"].use_count == 1


def test_typo_resolves_with_medium_confidence(normalizer_for):
    model = ScriptedModel(MOTHER_CITY)
    result = run(normalizer_for(model).normalize("Johanesburg"))

    assert result.city == "Johannesburg"
    assert result.confidence == Confidence.MEDIUM
    assert model.calls == []


def test_short_unknown_input_skips_fuzzy_matching(normalizer_for):
    result = run(normalizer_for().normalize("xyz"))
    assert result.confidence == Confidence.LOW


def test_model_answer_is_learned(normalizer_for, eval_store):
    model = ScriptedModel(MOTHER_CITY)
    normalizer = normalizer_for(model)

    first = run(normalizer.normalize("The Mother City"))
    second = run(normalizer.normalize("the mother city"))

    # 1. model consulted once, its answer reused
    assert len(model.calls) == 1
    assert first.city == second.city == "Cape Town"
    assert first.original_input == "The Mother City"

    # 2. stored as a system-learned alias
    learned = eval_store.learned["the mother city"]
    assert learned.added_by == LearnedBy.SYSTEM
    assert learned.city == "Cape Town"


def test_low_confidence_model_answer_is_not_learned(normalizer_for, eval_store):
    guess = dict(MOTHER_CITY, confidence="low")
    result = run(normalizer_for(ScriptedModel(guess)).normalize("somewhere near the sea"))

    assert result.confidence == Confidence.LOW
    assert eval_store.learned == {}


@pytest.mark.parametrize(
    "model",
    [
        None,
        ScriptedModel(error=RuntimeError("provider down")),
        ScriptedModel(delay=1),
        ScriptedModel({"city": "Nowhere"}),
    ],
)
def test_unresolvable_input_falls_back(normalizer_for, eval_store, model):
    result = run(normalizer_for(model).normalize("Farm 42, Karoo"))

    assert result.city == "Farm 42, Karoo"
    assert result.province == "Unknown"
    assert (result.latitude, result.longitude) == (-26.2041, 28.0473)
    assert result.confidence == Confidence.LOW
    assert only_eval(eval_store).source == LocationSource.AI


def test_empty_input_is_rejected(normalizer_for):
    with pytest.raises(InvalidRequestError):
        run(normalizer_for().normalize("   "))


def test_eval_store_outage_does_not_break_normalization(normalizer_for):
    result = run(normalizer_for(store=FailingEvalStore()).normalize("cpt"))
    assert result.city == "Cape Town"


@pytest.mark.parametrize(
    "kwargs, expected",
    [
        (dict(budget_per_person=250), 25000),
        (dict(total_budget=40000, budget_type=BudgetType.TOTAL), 40000),
        (dict(budget_per_person=250, total_budget=40000, budget_type=BudgetType.TOTAL), 40000),
        (dict(total_budget=40000), 40000),
        (dict(), 20000),
    ],
)
def test_calculate_total_budget(kwargs, expected):
    assert calculate_total_budget(100, **kwargs) == expected
