"""Typed outcomes returned by engine operations.

Expected business outcomes (insufficient balance, closed redemption window,
lock contention, ...) are values, not exceptions. Hosting layers match on
``Failure.code`` to decide presentation; only storage faults and integrity
violations are raised (see ``claims_engine.exceptions``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, TypeVar, Union

T = TypeVar("T")


class FailureCode(str, Enum):
    """Taxonomy of expected operation failures."""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_RECIPIENT = "invalid_recipient"
    NO_SLOTS_AVAILABLE = "no_slots_available"
    OUT_OF_STOCK = "out_of_stock"
    INELIGIBLE = "ineligible"
    INVALID_STATE = "invalid_state"
    GIFT_EXPIRED = "gift_expired"
    TRANSIENT_LOCK_CONTENTION = "transient_lock_contention"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"

    @property
    def retryable(self) -> bool:
        return self is FailureCode.TRANSIENT_LOCK_CONTENTION


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    code: FailureCode
    message: str
    detail: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return self.code.retryable


Result = Union[Success[T], Failure]


def fail(code: FailureCode, message: str, **detail: Any) -> Failure:
    return Failure(code=code, message=message, detail=detail)


__all__ = ["Failure", "FailureCode", "Result", "Success", "fail"]
