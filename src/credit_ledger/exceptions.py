from __future__ import annotations

from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base exception for ledger operations."""

    code: str = "CREDIT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidAmount(CreditError, ValueError):
    """Non-positive or non-integer amount; raised before the store is touched."""

    code = "INVALID_AMOUNT"

    def __init__(self, amount: Any, field: str = "amount") -> None:
        super().__init__(
            f"{field} must be a positive integer, got {amount!r}",
            {field: repr(amount)},
        )


class InsufficientCredits(CreditError, ValueError):
    """Consume asked for more than the atomically computed active balance."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, requested: int, available: int, user_id: Optional[str] = None) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"insufficient credits: requested {requested}, available {available}",
            {"requested": requested, "available": available, "user_id": user_id},
        )


class TransientStoreFailure(CreditError):
    """
    The store aborted the unit of work (serialization conflict, timeout,
    connection loss). Nothing was committed, so the whole operation may be
    retried with the same arguments.
    """

    code = "TRANSIENT_STORE_FAILURE"


class NotFound(CreditError, LookupError):
    """Referenced user or transaction does not exist."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}", {"kind": kind, "id": identifier})


class DuplicateTransaction(CreditError):
    """
    Insert rejected by a unique index: the same `transaction_no`, or a second
    GRANT for an `order_no` that already has one.
    """

    code = "DUPLICATE_TRANSACTION"
