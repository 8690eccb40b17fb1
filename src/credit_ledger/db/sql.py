from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Type, TypeVar
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    insert,
    select,
    update,
)
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from .base import BaseDBManager
from ..exceptions import DuplicateTransaction, TransientStoreFailure
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry
from ..models.transaction import CreditStatus, CreditTransaction, TransactionType
from ..models.user import UserAccount


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_COLUMN_TYPES = {
    "integer": Integer,
    "number": Float,
    "boolean": Boolean,
    "string": String,
    "datetime": DateTime,
    "object": JSON,
    "array": JSON,
}


def build_table(model: Type[DBSerializableModel], metadata: MetaData) -> Table:
    """Build a Core table from the model's logical schema."""
    schema = model.db_schema()
    pk = schema["primary_key"] or "id"
    columns: List[Any] = []
    for name, meta in schema["properties"].items():
        column_type = _COLUMN_TYPES.get(meta["type"], String)
        if name == pk:
            columns.append(Column(name, String(64), primary_key=True))
        elif column_type is String:
            columns.append(Column(name, String(255), nullable=meta["nullable"]))
        else:
            columns.append(Column(name, column_type(), nullable=meta["nullable"]))

    table_name = schema["collection_name"]
    for fields in schema["unique_indexes"]:
        columns.append(UniqueConstraint(*fields, name=f"uq_{table_name}_{'_'.join(fields)}"))
    table = Table(table_name, metadata, *columns)
    for fields in schema["indexes"]:
        Index(f"ix_{table_name}_{'_'.join(fields)}", *[table.c[f] for f in fields])
    return table


metadata = MetaData()
users_table = build_table(UserAccount, metadata)
credit_transactions_table = build_table(CreditTransaction, metadata)
ledger_table = build_table(LedgerEntry, metadata)


def _translate(exc: DBAPIError | PoolTimeoutError) -> Exception:
    if isinstance(exc, IntegrityError):
        return DuplicateTransaction("unique constraint violated", {"error": str(exc.orig)})
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return TransientStoreFailure(f"sql unit of work aborted: {exc}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientStoreFailure(f"sql connection lost: {exc}")
    return exc


class SQLAlchemyDBManager(BaseDBManager):
    """
    Relational implementation on SQLAlchemy's asyncio Core API.

    `transaction()` opens one connection-level transaction and binds it to
    the current task, so every call inside the block shares it. Consume
    locks the user's active grant rows with SELECT ... FOR UPDATE; on
    backends that ignore row locks (SQLite) the guarded UPDATE in
    `update_remaining_credits` still rejects a stale write.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._conn: ContextVar[Optional[AsyncConnection]] = ContextVar(
            f"sql_connection_{id(self)}", default=None
        )

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs: Any) -> "SQLAlchemyDBManager":
        url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if not url.startswith("sqlite"):
            engine_kwargs.setdefault("pool_pre_ping", True)
        return cls(create_async_engine(url, **engine_kwargs))

    async def init_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._conn.get() is not None:
            yield
            return

        try:
            async with self._engine.begin() as conn:
                token = self._conn.set(conn)
                try:
                    yield
                finally:
                    self._conn.reset(token)
        except (DBAPIError, PoolTimeoutError) as exc:
            translated = _translate(exc)
            if translated is exc:
                raise
            logger.warning("SQL transaction aborted: %s", exc)
            raise translated from exc

    async def _execute(self, statement: Any) -> Any:
        conn = self._conn.get()
        try:
            if conn is not None:
                return await conn.execute(statement)
            async with self._engine.begin() as own:
                return await own.execute(statement)
        except (DBAPIError, PoolTimeoutError) as exc:
            translated = _translate(exc)
            if translated is exc:
                raise
            raise translated from exc

    @staticmethod
    def _to_row(model: DBSerializableModel) -> Dict[str, Any]:
        if getattr(model, "id", None) is None:
            setattr(model, "id", uuid4().hex)
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in model.serialize_for_db().items()
        }

    @staticmethod
    def _decode_all(model_cls: Type[TModel], result: Any) -> List[TModel]:
        return [
            model_cls.model_validate({k: v for k, v in row._mapping.items() if v is not None})
            for row in result
        ]

    async def _fetch_one(self, model_cls: Type[TModel], statement: Any) -> Optional[TModel]:
        rows = self._decode_all(model_cls, await self._execute(statement))
        return rows[0] if rows else None

    # User operations
    async def add_user(self, user: UserAccount) -> UserAccount:
        await self._execute(insert(users_table).values(**self._to_row(user)))
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        return await self._fetch_one(
            UserAccount, select(users_table).where(users_table.c.id == user_id)
        )

    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        return await self._fetch_one(
            UserAccount, select(users_table).where(users_table.c.email == email)
        )

    async def get_users(self) -> Iterable[UserAccount]:
        result = await self._execute(select(users_table).order_by(users_table.c.created_at))
        return self._decode_all(UserAccount, result)

    # Credit transactions
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        await self._execute(insert(credit_transactions_table).values(**self._to_row(tx)))
        return tx

    async def get_credit_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        t = credit_transactions_table
        return await self._fetch_one(CreditTransaction, select(t).where(t.c.id == transaction_id))

    async def find_credit_transaction_by_no(
        self, transaction_no: str
    ) -> Optional[CreditTransaction]:
        t = credit_transactions_table
        return await self._fetch_one(
            CreditTransaction, select(t).where(t.c.transaction_no == transaction_no)
        )

    async def find_grant_by_order_no(self, order_no: str) -> Optional[CreditTransaction]:
        t = credit_transactions_table
        return await self._fetch_one(
            CreditTransaction,
            select(t).where(
                t.c.order_no == order_no,
                t.c.transaction_type == TransactionType.GRANT.value,
            ),
        )

    async def get_credit_transactions(self, user_id: str) -> List[CreditTransaction]:
        t = credit_transactions_table
        result = await self._execute(
            select(t).where(t.c.user_id == user_id).order_by(t.c.created_at, t.c.id)
        )
        return self._decode_all(CreditTransaction, result)

    async def lock_active_grants(self, user_id: str) -> List[CreditTransaction]:
        if self._conn.get() is None:
            raise RuntimeError("lock_active_grants must be called inside transaction()")
        t = credit_transactions_table
        result = await self._execute(
            select(t)
            .where(
                t.c.user_id == user_id,
                t.c.transaction_type == TransactionType.GRANT.value,
                t.c.status == CreditStatus.ACTIVE.value,
            )
            .with_for_update()
        )
        return self._decode_all(CreditTransaction, result)

    async def update_remaining_credits(
        self, tx: CreditTransaction, expected_remaining: int
    ) -> CreditTransaction:
        t = credit_transactions_table
        result = await self._execute(
            update(t)
            .where(t.c.id == tx.id, t.c.remaining_credits == expected_remaining)
            .values(remaining_credits=tx.remaining_credits, status=tx.status.value)
        )
        if result.rowcount == 0:
            raise TransientStoreFailure(
                "credit row changed concurrently",
                {"transaction_id": tx.id, "expected_remaining": expected_remaining},
            )
        return tx

    async def expire_credit_transactions(self, as_of: datetime) -> int:
        t = credit_transactions_table
        result = await self._execute(
            update(t)
            .where(
                t.c.status == CreditStatus.ACTIVE.value,
                t.c.expires_at.is_not(None),
                t.c.expires_at <= as_of,
            )
            .values(status=CreditStatus.EXPIRED.value)
        )
        return result.rowcount

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._execute(insert(ledger_table).values(**self._to_row(entry)))
        return entry

    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]:
        result = await self._execute(
            select(ledger_table)
            .where(ledger_table.c.user_id == user_id)
            .order_by(ledger_table.c.created_at)
        )
        return self._decode_all(LedgerEntry, result)
