"""
Eval/telemetry store.

Records location-normalization and matching observations for offline quality
measurement, plus the learned-location aliases the normalizer consults.

Implementations:
- RedisEvalStore: Azure Cache for Redis (redis.asyncio)
- InMemoryEvalStore: tests and local development
- NullEvalStore: discards writes, returns empty reads (Redis not configured)

The matching path never talks to a store directly; it goes through
EvalRecorder, which turns every store failure into a logged warning.
"""

import logging
from typing import Optional, Protocol

import redis.asyncio as redis

from ..core.config import KeyVaultSecrets, Settings
from ..core.locations import normalize_key
from ..core.observability import get_tracer
from ..models.caterer import SubscriptionTier
from ..models.evals import (
    Confidence,
    LearnedBy,
    LearnedLocation,
    LocationEval,
    LocationSource,
    MatchingEval,
    SystemHealth,
    now_ms,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Redis keys
LOCATION_EVALS = "kai:evals:location"
MATCHING_EVALS = "kai:evals:matching"
LEARNED_LOCATIONS = "kai:learned:locations"
LOCATION_STATS = "kai:stats:location"
MATCHING_STATS = "kai:stats:matching"

# Page size for eval listings
DEFAULT_EVAL_LIMIT = 100


class EvalStore(Protocol):
    async def log_location_eval(self, eval_: LocationEval) -> str: ...

    async def get_location_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[LocationEval]: ...

    async def correct_location_eval(
        self, eval_id: str, city: str, province: str, lat: float, lng: float
    ) -> Optional[LocationEval]: ...

    async def get_location_stats(self) -> dict[str, float]: ...

    async def learn_location(self, location: LearnedLocation) -> None: ...

    async def get_learned_location(self, alias: str) -> Optional[LearnedLocation]: ...

    async def get_all_learned_locations(self) -> list[LearnedLocation]: ...

    async def increment_location_use(self, alias: str) -> None: ...

    async def delete_learned_location(self, alias: str) -> bool: ...

    async def log_matching_eval(self, eval_: MatchingEval) -> str: ...

    async def get_matching_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[MatchingEval]: ...

    async def update_matching_eval_outcome(
        self, eval_id: str, successful_booking: bool, customer_rating: Optional[float] = None
    ) -> Optional[MatchingEval]: ...

    async def get_matching_stats(self) -> dict[str, float]: ...

    async def get_system_health(self) -> SystemHealth: ...


def compute_system_health(
    location_stats: dict[str, float],
    matching_stats: dict[str, float],
    learned_count: int,
) -> SystemHealth:
    """Percentages and averages rounded to 2 decimals; empty denominators count as 1."""
    total_locations = location_stats.get("total") or 1
    total_matches = matching_stats.get("total_matches") or 1
    rating_count = matching_stats.get("rating_count") or 1

    location_accuracy = location_stats.get("confidence_high", 0) / total_locations * 100
    success_rate = matching_stats.get("successful_bookings", 0) / total_matches * 100
    average_rating = matching_stats.get("total_rating", 0) / rating_count

    return SystemHealth(
        location_accuracy=round(location_accuracy, 2),
        matching_success_rate=round(success_rate, 2),
        average_rating=round(average_rating, 2),
        learned_locations_count=learned_count,
    )


def _location_stat_fields(eval_: LocationEval) -> list[str]:
    return [
        "total",
        f"confidence_{Confidence(eval_.confidence).value}",
        f"source_{LocationSource(eval_.source).value}",
    ]


def _learned_from_correction(
    original: LocationEval, city: str, province: str, lat: float, lng: float
) -> LearnedLocation:
    return LearnedLocation(
        alias=normalize_key(original.input),
        city=city,
        province=province,
        lat=lat,
        lng=lng,
        use_count=1,
        added_by=LearnedBy.USER_CORRECTION,
    )


def _outcome_stat_deltas(
    previous: MatchingEval, successful_booking: bool, customer_rating: Optional[float]
) -> dict[str, float]:
    """Stat increments so repeated outcome updates never double count."""
    deltas: dict[str, float] = {}
    if successful_booking != previous.successful_booking:
        deltas["successful_bookings"] = 1 if successful_booking else -1
    if customer_rating is not None:
        if previous.customer_rating is None:
            deltas["rating_count"] = 1
            deltas["total_rating"] = customer_rating
        else:
            deltas["total_rating"] = customer_rating - previous.customer_rating
    return deltas


def _parse_stats(raw: dict) -> dict[str, float]:
    stats: dict[str, float] = {}
    for key, value in (raw or {}).items():
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = 0.0
        stats[key] = int(number) if number.is_integer() else number
    return stats


class RedisEvalStore:
    """
    Redis-backed eval store.

    Layout:
    - kai:evals:location / kai:evals:matching: sorted sets of eval ids by timestamp
    - <same key>:data: hash of eval id → JSON document
    - kai:learned:locations: hash of alias → JSON document
    - kai:stats:location / kai:stats:matching: counters
    """

    def __init__(self, client: redis.Redis):
        self.redis = client

    async def _add_eval(self, key: str, eval_id: str, timestamp: int, document: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(f"{key}:data", eval_id, document)
            pipe.zadd(key, {eval_id: timestamp})
            await pipe.execute()

    async def _recent(self, key: str, limit: int) -> list[str]:
        ids = await self.redis.zrevrange(key, 0, max(limit, 1) - 1)
        if not ids:
            return []
        documents = await self.redis.hmget(f"{key}:data", ids)
        return [d for d in documents if d]

    async def log_location_eval(self, eval_: LocationEval) -> str:
        with tracer.start_as_current_span("eval_store.log_location_eval"):
            await self._add_eval(LOCATION_EVALS, eval_.id, eval_.timestamp, eval_.model_dump_json())
            async with self.redis.pipeline(transaction=True) as pipe:
                for stat in _location_stat_fields(eval_):
                    pipe.hincrby(LOCATION_STATS, stat, 1)
                await pipe.execute()
            return eval_.id

    async def get_location_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[LocationEval]:
        return [LocationEval.model_validate_json(d) for d in await self._recent(LOCATION_EVALS, limit)]

    async def correct_location_eval(
        self, eval_id: str, city: str, province: str, lat: float, lng: float
    ) -> Optional[LocationEval]:
        raw = await self.redis.hget(f"{LOCATION_EVALS}:data", eval_id)
        if not raw:
            return None
        original = LocationEval.model_validate_json(raw)
        corrected = original.model_copy(
            update={"verified": True, "corrected_city": city, "corrected_province": province}
        )
        await self.redis.hset(f"{LOCATION_EVALS}:data", eval_id, corrected.model_dump_json())
        await self.learn_location(_learned_from_correction(original, city, province, lat, lng))
        await self.redis.hincrby(LOCATION_STATS, "corrections", 1)
        return corrected

    async def get_location_stats(self) -> dict[str, float]:
        return _parse_stats(await self.redis.hgetall(LOCATION_STATS))

    async def learn_location(self, location: LearnedLocation) -> None:
        alias = normalize_key(location.alias)
        stored = location.model_copy(update={"alias": alias})
        await self.redis.hset(LEARNED_LOCATIONS, alias, stored.model_dump_json())

    async def get_learned_location(self, alias: str) -> Optional[LearnedLocation]:
        raw = await self.redis.hget(LEARNED_LOCATIONS, normalize_key(alias))
        return LearnedLocation.model_validate_json(raw) if raw else None

    async def get_all_learned_locations(self) -> list[LearnedLocation]:
        raw = await self.redis.hgetall(LEARNED_LOCATIONS)
        return [LearnedLocation.model_validate_json(v) for v in (raw or {}).values()]

    async def increment_location_use(self, alias: str) -> None:
        location = await self.get_learned_location(alias)
        if location is None:
            return
        await self.learn_location(
            location.model_copy(update={"use_count": location.use_count + 1, "last_used": now_ms()})
        )

    async def delete_learned_location(self, alias: str) -> bool:
        return bool(await self.redis.hdel(LEARNED_LOCATIONS, normalize_key(alias)))

    async def log_matching_eval(self, eval_: MatchingEval) -> str:
        with tracer.start_as_current_span("eval_store.log_matching_eval"):
            await self._add_eval(MATCHING_EVALS, eval_.id, eval_.timestamp, eval_.model_dump_json())
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hincrby(MATCHING_STATS, "total_matches", 1)
                pipe.hincrby(MATCHING_STATS, f"tier_{SubscriptionTier(eval_.assigned_tier).value}", 1)
                pipe.hincrby(MATCHING_STATS, "total_caterers_matched", eval_.caterers_matched)
                await pipe.execute()
            return eval_.id

    async def get_matching_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[MatchingEval]:
        return [MatchingEval.model_validate_json(d) for d in await self._recent(MATCHING_EVALS, limit)]

    async def update_matching_eval_outcome(
        self, eval_id: str, successful_booking: bool, customer_rating: Optional[float] = None
    ) -> Optional[MatchingEval]:
        raw = await self.redis.hget(f"{MATCHING_EVALS}:data", eval_id)
        if not raw:
            return None
        previous = MatchingEval.model_validate_json(raw)
        update = {"successful_booking": successful_booking}
        if customer_rating is not None:
            update["customer_rating"] = customer_rating
        updated = previous.model_copy(update=update)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(f"{MATCHING_EVALS}:data", eval_id, updated.model_dump_json())
            for stat, delta in _outcome_stat_deltas(previous, successful_booking, customer_rating).items():
                if stat == "total_rating":
                    pipe.hincrbyfloat(MATCHING_STATS, stat, delta)
                else:
                    pipe.hincrby(MATCHING_STATS, stat, int(delta))
            await pipe.execute()
        return updated

    async def get_matching_stats(self) -> dict[str, float]:
        return _parse_stats(await self.redis.hgetall(MATCHING_STATS))

    async def get_system_health(self) -> SystemHealth:
        return compute_system_health(
            await self.get_location_stats(),
            await self.get_matching_stats(),
            await self.redis.hlen(LEARNED_LOCATIONS),
        )


class InMemoryEvalStore:
    """Dict-backed eval store with the same semantics as RedisEvalStore."""

    def __init__(self):
        self.location_evals: dict[str, LocationEval] = {}
        self.matching_evals: dict[str, MatchingEval] = {}
        self.learned: dict[str, LearnedLocation] = {}
        self.location_stats: dict[str, float] = {}
        self.matching_stats: dict[str, float] = {}

    @staticmethod
    def _incr(stats: dict[str, float], key: str, amount: float = 1) -> None:
        stats[key] = stats.get(key, 0) + amount

    @staticmethod
    def _recent(evals: dict, limit: int) -> list:
        return sorted(evals.values(), key=lambda e: e.timestamp, reverse=True)[:limit]

    async def log_location_eval(self, eval_: LocationEval) -> str:
        self.location_evals[eval_.id] = eval_
        for stat in _location_stat_fields(eval_):
            self._incr(self.location_stats, stat)
        return eval_.id

    async def get_location_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[LocationEval]:
        return self._recent(self.location_evals, limit)

    async def correct_location_eval(
        self, eval_id: str, city: str, province: str, lat: float, lng: float
    ) -> Optional[LocationEval]:
        original = self.location_evals.get(eval_id)
        if original is None:
            return None
        corrected = original.model_copy(
            update={"verified": True, "corrected_city": city, "corrected_province": province}
        )
        self.location_evals[eval_id] = corrected
        await self.learn_location(_learned_from_correction(original, city, province, lat, lng))
        self._incr(self.location_stats, "corrections")
        return corrected

    async def get_location_stats(self) -> dict[str, float]:
        return dict(self.location_stats)

    async def learn_location(self, location: LearnedLocation) -> None:
        alias = normalize_key(location.alias)
        self.learned[alias] = location.model_copy(update={"alias": alias})

    async def get_learned_location(self, alias: str) -> Optional[LearnedLocation]:
        return self.learned.get(normalize_key(alias))

    async def get_all_learned_locations(self) -> list[LearnedLocation]:
        return list(self.learned.values())

    async def increment_location_use(self, alias: str) -> None:
        key = normalize_key(alias)
        location = self.learned.get(key)
        if location is not None:
            self.learned[key] = location.model_copy(
                update={"use_count": location.use_count + 1, "last_used": now_ms()}
            )

    async def delete_learned_location(self, alias: str) -> bool:
        return self.learned.pop(normalize_key(alias), None) is not None

    async def log_matching_eval(self, eval_: MatchingEval) -> str:
        self.matching_evals[eval_.id] = eval_
        self._incr(self.matching_stats, "total_matches")
        self._incr(self.matching_stats, f"tier_{SubscriptionTier(eval_.assigned_tier).value}")
        self._incr(self.matching_stats, "total_caterers_matched", eval_.caterers_matched)
        return eval_.id

    async def get_matching_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[MatchingEval]:
        return self._recent(self.matching_evals, limit)

    async def update_matching_eval_outcome(
        self, eval_id: str, successful_booking: bool, customer_rating: Optional[float] = None
    ) -> Optional[MatchingEval]:
        previous = self.matching_evals.get(eval_id)
        if previous is None:
            return None
        update = {"successful_booking": successful_booking}
        if customer_rating is not None:
            update["customer_rating"] = customer_rating
        updated = previous.model_copy(update=update)
        self.matching_evals[eval_id] = updated
        for stat, delta in _outcome_stat_deltas(previous, successful_booking, customer_rating).items():
            self._incr(self.matching_stats, stat, delta)
        return updated

    async def get_matching_stats(self) -> dict[str, float]:
        return dict(self.matching_stats)

    async def get_system_health(self) -> SystemHealth:
        return compute_system_health(self.location_stats, self.matching_stats, len(self.learned))


class NullEvalStore:
    """Used when no eval backend is configured. Writes vanish, reads are empty."""

    async def log_location_eval(self, eval_: LocationEval) -> str:
        return eval_.id

    async def get_location_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[LocationEval]:
        return []

    async def correct_location_eval(
        self, eval_id: str, city: str, province: str, lat: float, lng: float
    ) -> Optional[LocationEval]:
        return None

    async def get_location_stats(self) -> dict[str, float]:
        return {}

    async def learn_location(self, location: LearnedLocation) -> None:
        return None

    async def get_learned_location(self, alias: str) -> Optional[LearnedLocation]:
        return None

    async def get_all_learned_locations(self) -> list[LearnedLocation]:
        return []

    async def increment_location_use(self, alias: str) -> None:
        return None

    async def delete_learned_location(self, alias: str) -> bool:
        return False

    async def log_matching_eval(self, eval_: MatchingEval) -> str:
        return eval_.id

    async def get_matching_evals(self, limit: int = DEFAULT_EVAL_LIMIT) -> list[MatchingEval]:
        return []

    async def update_matching_eval_outcome(
        self, eval_id: str, successful_booking: bool, customer_rating: Optional[float] = None
    ) -> Optional[MatchingEval]:
        return None

    async def get_matching_stats(self) -> dict[str, float]:
        return {}

    async def get_system_health(self) -> SystemHealth:
        return compute_system_health({}, {}, 0)


class EvalRecorder:
    """
    Best-effort facade over an EvalStore for the matching path.

    Every method logs a warning and returns a neutral value when the store
    fails; nothing here ever raises into a matching operation.
    """

    def __init__(self, store: EvalStore):
        self.store = store

    async def record_location(self, eval_: LocationEval) -> Optional[str]:
        try:
            return await self.store.log_location_eval(eval_)
        except Exception as e:
            logger.warning(f"Location eval not recorded for '{eval_.input}': {e}")
            return None

    async def record_matching(self, eval_: MatchingEval) -> Optional[str]:
        try:
            return await self.store.log_matching_eval(eval_)
        except Exception as e:
            logger.warning(f"Matching eval not recorded for request {eval_.request_id}: {e}")
            return None

    async def learned_location(self, alias: str) -> Optional[LearnedLocation]:
        try:
            return await self.store.get_learned_location(alias)
        except Exception as e:
            logger.warning(f"Learned location lookup failed for '{alias}': {e}")
            return None

    async def learn(self, location: LearnedLocation) -> None:
        try:
            await self.store.learn_location(location)
        except Exception as e:
            logger.warning(f"Could not learn location '{location.alias}': {e}")

    async def touch_learned(self, alias: str) -> None:
        try:
            await self.store.increment_location_use(alias)
        except Exception as e:
            logger.warning(f"Could not bump use count for '{alias}': {e}")


def build_eval_store(settings: Settings, secrets: Optional[KeyVaultSecrets] = None) -> EvalStore:
    """Redis store when a host is configured, otherwise the null store."""
    if settings.environment == "local" or not settings.redis_hostname:
        logger.info("Eval store disabled (local mode or REDIS_HOSTNAME not set)")
        return NullEvalStore()

    password = secrets.redis_access_key if secrets else None
    client = redis.Redis(
        host=settings.redis_hostname,
        port=settings.redis_port,
        password=password,
        ssl=True,
        decode_responses=True,
    )
    logger.info(f"Redis eval store initialized: {settings.redis_hostname}:{settings.redis_port}")
    return RedisEvalStore(client)
