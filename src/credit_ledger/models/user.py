from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional, Tuple

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UserAccount(DBSerializableModel):
    """
    Internal user representation for the credit system.
    This is isolated from the host application's auth/session model; it only
    exists so ledger operations can reject unknown user ids.
    """

    collection_name: ClassVar[str] = "credit_users"
    unique_indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = (("email",),)

    id: Optional[str] = Field(default=None)
    email: Optional[str] = Field(
        default=None,
        description="Login email from the host system, used by admin tooling.",
    )
    created_at: datetime = Field(default_factory=utcnow)
