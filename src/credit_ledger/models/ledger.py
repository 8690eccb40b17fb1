from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"
    SYSTEM = "system"


class LedgerEntry(DBSerializableModel):
    """
    Audit entry for one ledger operation, persisted to the DB and mirrored
    to the JSON-lines file log.
    """

    collection_name: ClassVar[str] = "credit_ledger"
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (("user_id", "created_at"),)

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    transaction_id: Optional[str] = Field(
        default=None,
        description="CreditTransaction row written by the logged operation.",
    )
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
