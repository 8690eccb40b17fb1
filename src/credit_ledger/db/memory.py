from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from .base import BaseDBManager
from ..exceptions import DuplicateTransaction, TransientStoreFailure
from ..models.ledger import LedgerEntry
from ..models.transaction import CreditStatus, CreditTransaction, TransactionType
from ..models.user import UserAccount


_Snapshot = Tuple[Dict[str, UserAccount], Dict[str, CreditTransaction], int]


class InMemoryDBManager(BaseDBManager):
    """
    In-memory implementation used for tests and local development.

    A single asyncio.Lock serialises units of work, which is what a real
    database's row locks give us per user, only coarser. Rows are stored as
    copies and replaced on update, so a rollback just restores the dicts
    captured when the unit started. NOT suitable for production.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserAccount] = {}
        self._credits: Dict[str, CreditTransaction] = {}
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._in_tx: ContextVar[bool] = ContextVar(f"memory_tx_{id(self)}", default=False)

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _snapshot(self) -> _Snapshot:
        return dict(self._users), dict(self._credits), len(self._ledger)

    def _restore(self, snapshot: _Snapshot) -> None:
        users, credits, ledger_len = snapshot
        self._users = users
        self._credits = credits
        del self._ledger[ledger_len:]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_tx.get():
            # Joined the enclosing unit
            yield
            return

        async with self._lock:
            token = self._in_tx.set(True)
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._in_tx.reset(token)

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        async with self.transaction():
            if user.id is not None and user.id in self._users:
                raise DuplicateTransaction(f"user id already exists: {user.id}", {"id": user.id})
            if user.email and any(u.email == user.email for u in self._users.values()):
                raise DuplicateTransaction(f"user email already exists: {user.email}")
            if user.id is None:
                user.id = self._next_id()
            self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        for user in self._users.values():
            if user.email == email:
                return user.model_copy(deep=True)
        return None

    async def get_users(self) -> Iterable[UserAccount]:
        return [u.model_copy(deep=True) for u in self._users.values()]

    # Credit transactions
    def _check_unique(self, tx: CreditTransaction) -> None:
        for existing in self._credits.values():
            if tx.transaction_no and existing.transaction_no == tx.transaction_no:
                raise DuplicateTransaction(
                    f"transaction_no already recorded: {tx.transaction_no}",
                    {"transaction_no": tx.transaction_no},
                )
            if (
                tx.order_no
                and existing.order_no == tx.order_no
                and existing.transaction_type is tx.transaction_type
            ):
                raise DuplicateTransaction(
                    f"order_no already has a {tx.transaction_type.value} row: {tx.order_no}",
                    {"order_no": tx.order_no},
                )

    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        async with self.transaction():
            self._check_unique(tx)
            if tx.id is None:
                tx.id = self._next_id()
            self._credits[tx.id] = tx.model_copy(deep=True)
        return tx

    async def get_credit_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        tx = self._credits.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def find_credit_transaction_by_no(
        self, transaction_no: str
    ) -> Optional[CreditTransaction]:
        for tx in self._credits.values():
            if tx.transaction_no == transaction_no:
                return tx.model_copy(deep=True)
        return None

    async def find_grant_by_order_no(self, order_no: str) -> Optional[CreditTransaction]:
        for tx in self._credits.values():
            if tx.order_no == order_no and tx.transaction_type is TransactionType.GRANT:
                return tx.model_copy(deep=True)
        return None

    async def get_credit_transactions(self, user_id: str) -> List[CreditTransaction]:
        rows = [t.model_copy(deep=True) for t in self._credits.values() if t.user_id == user_id]
        rows.sort(key=lambda t: t.created_at)
        return rows

    async def lock_active_grants(self, user_id: str) -> List[CreditTransaction]:
        if not self._in_tx.get():
            raise RuntimeError("lock_active_grants must be called inside transaction()")
        return [
            t.model_copy(deep=True)
            for t in self._credits.values()
            if t.user_id == user_id
            and t.transaction_type is TransactionType.GRANT
            and t.status is CreditStatus.ACTIVE
        ]

    async def update_remaining_credits(
        self, tx: CreditTransaction, expected_remaining: int
    ) -> CreditTransaction:
        async with self.transaction():
            stored = self._credits.get(tx.id or "")
            if stored is None or stored.remaining_credits != expected_remaining:
                raise TransientStoreFailure(
                    "credit row changed concurrently",
                    {"transaction_id": tx.id, "expected_remaining": expected_remaining},
                )
            self._credits[stored.id] = stored.model_copy(
                update={"remaining_credits": tx.remaining_credits, "status": tx.status}
            )
        return tx

    async def expire_credit_transactions(self, as_of: datetime) -> int:
        count = 0
        async with self.transaction():
            for tx_id, tx in list(self._credits.items()):
                if tx.status is CreditStatus.ACTIVE and tx.is_expired(as_of):
                    self._credits[tx_id] = tx.model_copy(update={"status": CreditStatus.EXPIRED})
                    count += 1
        return count

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        async with self.transaction():
            if entry.id is None:
                entry.id = self._next_id()
            self._ledger.append(entry.model_copy(deep=True))
        return entry

    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]:
        return [e.model_copy(deep=True) for e in self._ledger if e.user_id == user_id]
