"""
Store interfaces and their implementations.

- base: Protocols the services depend on
- memory: Lock-guarded in-memory stores (tests, ENVIRONMENT=local)
- cosmos: Azure Cosmos DB stores (production)
"""

from .base import (
    CatererDirectory,
    EventRequestStore,
    MatchRepository,
    Repositories,
    RoundRobinStateStore,
)
from .memory import (
    InMemoryCatererDirectory,
    InMemoryEventRequestStore,
    InMemoryMatchRepository,
    InMemoryRoundRobinStateStore,
    build_memory_repositories,
)

__all__ = [
    "CatererDirectory",
    "EventRequestStore",
    "MatchRepository",
    "Repositories",
    "RoundRobinStateStore",
    "InMemoryCatererDirectory",
    "InMemoryEventRequestStore",
    "InMemoryMatchRepository",
    "InMemoryRoundRobinStateStore",
    "build_memory_repositories",
]
