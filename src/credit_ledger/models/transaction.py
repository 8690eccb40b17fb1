from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, utcnow


class TransactionType(str, Enum):
    GRANT = "grant"
    CONSUME = "consume"


class TransactionScene(str, Enum):
    """Why a transaction happened. Closed set, used for reporting."""

    GIFT = "gift"
    SIGNUP = "signup"
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"
    AWARD = "award"
    MEME_GENERATION = "meme-generation"


class CreditStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class CreditTransaction(DBSerializableModel):
    """
    One row per grant or consumption event.

    GRANT rows carry the spendable balance in `remaining_credits`; only that
    counter and `status` change after insert. CONSUME rows are audit records
    written with `remaining_credits == 0` and the per-grant allocation in
    `metadata["consumed_from"]`.
    """

    collection_name: ClassVar[str] = "credit_transactions"
    unique_indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("transaction_no",),
        ("order_no", "transaction_type"),
    )
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (
        ("user_id", "status"),
        ("status", "expires_at"),
    )

    id: Optional[str] = Field(default=None)
    user_id: str
    user_email: Optional[str] = None
    transaction_type: TransactionType
    transaction_scene: TransactionScene
    credits: int = Field(gt=0)
    remaining_credits: int = Field(default=0, ge=0)
    status: CreditStatus = CreditStatus.ACTIVE
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    order_no: Optional[str] = None
    subscription_no: Optional[str] = None
    transaction_no: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, as_of: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= as_of

    @property
    def consumed_credits(self) -> int:
        if self.transaction_type is TransactionType.CONSUME:
            return self.credits
        return self.credits - self.remaining_credits


class GrantOptions(BaseModel):
    """Recognised options for a grant. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    expires_in_days: Optional[int] = Field(default=None, ge=0)
    order_no: Optional[str] = None
    subscription_no: Optional[str] = None
    transaction_no: Optional[str] = None
    user_email: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsumeOptions(BaseModel):
    """Recognised options for a consume. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    transaction_no: Optional[str] = Field(
        default=None,
        description="Client idempotency token; a retried consume with the same "
        "value fails with DuplicateTransaction if the first one committed.",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Allocation(BaseModel):
    transaction_id: str
    credits: int


class ConsumeResult(BaseModel):
    consumed: int
    transactions: List[str] = Field(default_factory=list)
    allocations: List[Allocation] = Field(default_factory=list)
    consume_transaction_id: Optional[str] = None


class CreditSummary(BaseModel):
    user_id: str
    balance: int
    total_granted: int
    total_consumed: int
    total_expired: int
    records: int
