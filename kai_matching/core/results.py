"""Lookup results that make absence explicit instead of raising."""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    key: str = ""


@dataclass(frozen=True)
class Failed:
    reason: str
    stage: str = "persist"


Lookup = Union[Found[T], NotFound, Failed]
