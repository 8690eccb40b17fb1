from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

from ..models.ledger import LedgerEntry
from ..models.transaction import CreditTransaction
from ..models.user import UserAccount


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, SQLAlchemy) implement these
    methods. Calls made inside `transaction()` belong to one atomic unit;
    calls made outside it commit on their own.

    Backends translate driver errors: unique index violations raise
    DuplicateTransaction, aborted/timed-out units raise TransientStoreFailure.
    """

    async def init_schema(self) -> None:
        """Create tables/indexes. Backends without a schema do nothing."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Atomic unit of work. Commits on success, rolls back every write made
        inside the block on exception and re-raises.
        """
        yield

    # User operations
    @abstractmethod
    async def add_user(self, user: UserAccount) -> UserAccount: ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    @abstractmethod
    async def get_users(self) -> Iterable[UserAccount]: ...

    # Credit transactions
    @abstractmethod
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        """Insert a new row, assigning `id` if missing."""
        ...

    @abstractmethod
    async def get_credit_transaction(self, transaction_id: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def find_credit_transaction_by_no(
        self, transaction_no: str
    ) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def find_grant_by_order_no(self, order_no: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def get_credit_transactions(self, user_id: str) -> List[CreditTransaction]:
        """All rows of a user, oldest first."""
        ...

    @abstractmethod
    async def lock_active_grants(self, user_id: str) -> List[CreditTransaction]:
        """
        Return the user's ACTIVE GRANT rows and hold them exclusively until
        the enclosing `transaction()` ends. Must be called inside one.
        """
        ...

    @abstractmethod
    async def update_remaining_credits(
        self, tx: CreditTransaction, expected_remaining: int
    ) -> CreditTransaction:
        """
        Persist `tx.remaining_credits` and `tx.status`, only if the stored
        row still has `expected_remaining`. A mismatch means another unit got
        there first and raises TransientStoreFailure.
        """
        ...

    @abstractmethod
    async def expire_credit_transactions(self, as_of: datetime) -> int:
        """Mark ACTIVE rows with `expires_at <= as_of` EXPIRED; return the count."""
        ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]: ...
