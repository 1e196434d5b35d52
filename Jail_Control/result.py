"""Tagged outcome of one sub-fetch during reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def usable(self) -> bool:
        return True


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """Value is usable but was produced from a fallback path."""

    value: T
    reason: str

    @property
    def usable(self) -> bool:
        return True


@dataclass(frozen=True)
class Unavailable:
    reason: str
    error: BaseException | None = None

    @property
    def usable(self) -> bool:
        return False

    @property
    def value(self) -> Any:
        return None


FetchResult = Union[Ok[T], Degraded[T], Unavailable]
