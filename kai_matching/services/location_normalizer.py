"""
Location normalization for free-text South African location input.

Resolution order:
1. Learned aliases (eval store), bumping their use count
2. Static city/alias table
3. Fuzzy match against the static table (typos such as "johanesburg")
4. Generative model with a structured location schema
5. Fallback: the input itself as city, province "Unknown", Johannesburg
   coordinates, low confidence

Every resolution is logged as a LocationEval. Confident model answers are
learned so the next lookup of the same input skips the model.
"""

import asyncio
import logging
from typing import Optional

from fuzzywuzzy import fuzz, process

from ..core.circuit_breaker import CircuitBreaker
from ..core.errors import InvalidRequestError
from ..core.locations import (
    DEFAULT_LAT,
    DEFAULT_LNG,
    LOCATION_ALIASES,
    CityData,
    lookup_city,
    normalize_key,
)
from ..core.observability import get_tracer
from ..models.event_request import BudgetType
from ..models.evals import (
    Confidence,
    LearnedBy,
    LearnedLocation,
    LocationEval,
    LocationSource,
    NormalizedLocation,
)
from .eval_store import EvalRecorder
from .model_client import GenerativeModel

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

LOCATION_SCHEMA_NAME = "normalized_location"
FUZZY_MIN_SCORE = 85
# Shorter inputs ("ct", "pe") only resolve through exact aliases
FUZZY_MIN_LENGTH = 4
# Minimum input length learned from model answers
MIN_LEARNABLE_LENGTH = 3
DEFAULT_PER_PERSON_BUDGET = 200

LOCATION_PROMPT = """You are a South African location expert. Interpret the following location input and return the standardized city name, province, and approximate coordinates.

Common South African city aliases to recognize:
- "jozi", "joburg", "jhb", "egoli", "gauteng" → Johannesburg, Gauteng
- "cpt", "ct", "kaapstad", "mother city" → Cape Town, Western Cape
- "pe", "p.e.", "port elizabeth", "the bay", "windy city" → Gqeberha (formerly Port Elizabeth), Eastern Cape
- "durbs", "dbn", "ethekwini", "durban" → Durban, KwaZulu-Natal
- "pta", "tshwane", "pretoria", "jacaranda city" → Pretoria, Gauteng
- "bloem", "bfn", "bloemfontein" → Bloemfontein, Free State
- "stellies", "stellenbosch" → Stellenbosch, Western Cape
- "el", "east london", "buffalo city" → East London, Eastern Cape
- "polokwane", "pietersburg" → Polokwane, Limpopo
- "nelspruit", "mbombela" → Mbombela, Mpumalanga
- "kimberley", "diamond city" → Kimberley, Northern Cape
- "potch", "potchefstroom" → Potchefstroom, North West
- "soweto" → Johannesburg (Soweto), Gauteng
- "sandton" → Johannesburg (Sandton), Gauteng

If the input mentions a specific venue, suburb, or address, extract the main city.
If unsure, provide the best match with "low" confidence.

Location input: "{input}\""""


def calculate_total_budget(
    guest_count: int,
    budget_per_person: Optional[float] = None,
    total_budget: Optional[float] = None,
    budget_type: BudgetType = BudgetType.PER_PERSON,
) -> float:
    """
    Total event budget used for tier routing.

    An explicit total wins when the customer entered a total; otherwise the
    per-person budget times guests; otherwise any total given; otherwise an
    estimate of R200 per guest.
    """
    if budget_type == BudgetType.TOTAL and total_budget:
        return total_budget
    if budget_per_person:
        return guest_count * budget_per_person
    if total_budget:
        return total_budget
    return guest_count * DEFAULT_PER_PERSON_BUDGET


class LocationNormalizer:
    def __init__(
        self,
        recorder: EvalRecorder,
        model: Optional[GenerativeModel] = None,
        timeout_seconds: float = 15.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.recorder = recorder
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.breaker = breaker or CircuitBreaker(name="location-model", failure_threshold=5, timeout=60)
        self._schema = NormalizedLocation.model_json_schema()

    async def normalize(self, text: str) -> NormalizedLocation:
        with tracer.start_as_current_span("location_normalizer.normalize") as span:
            key = normalize_key(text)
            if not key:
                raise InvalidRequestError("location input cannot be empty")
            span.set_attribute("input_length", len(key))

            learned = await self.recorder.learned_location(key)
            if learned is not None:
                await self.recorder.touch_learned(key)
                span.set_attribute("source", LocationSource.LEARNED.value)
                return await self._resolved(
                    text, learned.city, learned.province, learned.lat, learned.lng,
                    Confidence.HIGH, LocationSource.LEARNED,
                )

            city = lookup_city(key)
            if city is not None:
                span.set_attribute("source", LocationSource.ALIAS.value)
                return await self._resolved(
                    text, city.city, city.province, city.lat, city.lng,
                    Confidence.HIGH, LocationSource.ALIAS,
                )

            city = self._fuzzy_lookup(key)
            if city is not None:
                span.set_attribute("source", "fuzzy")
                return await self._resolved(
                    text, city.city, city.province, city.lat, city.lng,
                    Confidence.MEDIUM, LocationSource.ALIAS,
                )

            span.set_attribute("source", LocationSource.AI.value)
            return await self._resolve_with_model(text, key)

    def _fuzzy_lookup(self, key: str) -> Optional[CityData]:
        if len(key) < FUZZY_MIN_LENGTH:
            return None
        best = process.extractOne(
            key, list(LOCATION_ALIASES), scorer=fuzz.ratio, score_cutoff=FUZZY_MIN_SCORE
        )
        if best is None:
            return None
        alias, score = best[0], best[1]
        logger.info(f"Fuzzy location match '{key}' → '{alias}' ({score})")
        return LOCATION_ALIASES[alias]

    async def _ask_model(self, text: str) -> NormalizedLocation:
        payload = await asyncio.wait_for(
            self.model.generate_json(
                LOCATION_PROMPT.format(input=text), self._schema, LOCATION_SCHEMA_NAME
            ),
            timeout=self.timeout_seconds,
        )
        payload = dict(payload)
        payload["original_input"] = text
        return NormalizedLocation.model_validate(payload)

    async def _resolve_with_model(self, text: str, key: str) -> NormalizedLocation:
        if self.model is None:
            logger.info(f"No location model configured; falling back for '{text}'")
            return await self._fallback(text)

        try:
            result = await self.breaker.call(self._ask_model, text)
        except Exception as e:
            logger.warning(f"Location normalization failed for '{text}': {e}")
            return await self._fallback(text)

        await self._log(text, result.city, result.province, result.confidence, LocationSource.AI)

        if result.confidence == Confidence.HIGH and len(key) >= MIN_LEARNABLE_LENGTH:
            await self.recorder.learn(
                LearnedLocation(
                    alias=key,
                    city=result.city,
                    province=result.province,
                    lat=result.latitude,
                    lng=result.longitude,
                    use_count=1,
                    added_by=LearnedBy.SYSTEM,
                )
            )
        return result

    async def _fallback(self, text: str) -> NormalizedLocation:
        return await self._resolved(
            text, text, "Unknown", DEFAULT_LAT, DEFAULT_LNG, Confidence.LOW, LocationSource.AI
        )

    async def _resolved(
        self,
        text: str,
        city: str,
        province: str,
        lat: float,
        lng: float,
        confidence: Confidence,
        source: LocationSource,
    ) -> NormalizedLocation:
        await self._log(text, city, province, confidence, source)
        return NormalizedLocation(
            city=city,
            province=province,
            latitude=lat,
            longitude=lng,
            confidence=confidence,
            original_input=text,
        )

    async def _log(
        self, text: str, city: str, province: str, confidence: Confidence, source: LocationSource
    ) -> None:
        await self.recorder.record_location(
            LocationEval(
                input=text,
                normalized_city=city,
                normalized_province=province,
                confidence=confidence,
                source=source,
            )
        )
