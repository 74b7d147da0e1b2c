"""Result values returned by the marketplace service.

Expected outcomes such as "record not found" or "window closed" are returned
as :class:`Failure` values rather than raised. :class:`LeagueError` subclasses
are reserved for the storage layer, which raises them from inside a
transaction so it can roll back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    WINDOW_CLOSED = "window_closed"
    NOT_AUTHORIZED = "not_authorized"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    reason: Optional[str] = None
    time_until_allowed: Optional[timedelta] = None


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Either ``data`` with an optional activity ``message``, or a ``failure``."""

    data: Optional[T] = None
    message: Optional[str] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, data: T, message: Optional[str] = None) -> "ServiceResult[T]":
        return cls(data=data, message=message)

    @classmethod
    def fail(
        cls,
        kind: FailureKind,
        message: str,
        *,
        reason: Optional[str] = None,
        time_until_allowed: Optional[timedelta] = None,
    ) -> "ServiceResult[T]":
        return cls(
            failure=Failure(
                kind=kind,
                message=message,
                reason=reason,
                time_until_allowed=time_until_allowed,
            )
        )


class LeagueError(Exception):
    """Base class for storage-level errors."""


class ConcurrencyConflictError(LeagueError):
    """Another request changed or locked the record being matched."""

    def __init__(self, message: str, buy_sell_id: Optional[int] = None) -> None:
        self.buy_sell_id = buy_sell_id
        super().__init__(message)


__all__ = [
    "ConcurrencyConflictError",
    "Failure",
    "FailureKind",
    "LeagueError",
    "ServiceResult",
]
