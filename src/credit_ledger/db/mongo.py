from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)

from .base import BaseDBManager
from ..exceptions import DuplicateTransaction, TransientStoreFailure
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry
from ..models.transaction import CreditStatus, CreditTransaction, TransactionType
from ..models.user import UserAccount


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_WRITE_CONFLICT = 112
_USER_LOCKS = "credit_user_locks"


def _is_transient(exc: PyMongoError) -> bool:
    if exc.has_error_label("TransientTransactionError"):
        return True
    if exc.has_error_label("UnknownTransactionCommitResult"):
        return True
    if isinstance(exc, (ConnectionFailure, ExecutionTimeout, WTimeoutError)):
        return True
    return isinstance(exc, OperationFailure) and exc.code == _WRITE_CONFLICT


def _translate(exc: PyMongoError) -> Exception:
    if isinstance(exc, DuplicateKeyError):
        return DuplicateTransaction(
            "duplicate key", {"key": str((exc.details or {}).get("keyValue", ""))}
        )
    if _is_transient(exc):
        return TransientStoreFailure(f"mongo unit of work aborted: {exc}")
    return exc


def _translate_errors(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            translated = _translate(exc)
            if translated is exc:
                raise
            raise translated from exc

    return wrapper


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a multi-document transaction (replica set or
    sharded cluster required) and binds its session to the current task.
    `lock_active_grants` bumps a per-user lock document first, so two units
    touching the same user write-conflict instead of both reading the same
    `remaining_credits`.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=False)
        return cls(client[db_name])

    async def init_schema(self) -> None:
        for model in (UserAccount, CreditTransaction, LedgerEntry):
            col = self._db[model.collection_name]
            for fields in model.unique_indexes:
                await col.create_index(
                    [(f, ASCENDING) for f in fields],
                    unique=True,
                    partialFilterExpression={fields[0]: {"$type": "string"}},
                )
            for fields in model.indexes:
                await col.create_index([(f, ASCENDING) for f in fields])

    async def close(self) -> None:
        self._db.client.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        try:
            async with await self._db.client.start_session() as session:
                token = self._session.set(session)
                try:
                    async with session.start_transaction():
                        yield
                finally:
                    self._session.reset(token)
        except PyMongoError as exc:
            translated = _translate(exc)
            if translated is exc:
                raise
            logger.warning("Mongo transaction aborted: %s", exc)
            raise translated from exc

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        model_id = getattr(model, "id", None)
        if not model_id:
            setattr(model, "id", uuid4().hex)
        data = model.serialize_for_db()
        data["_id"] = model.id  # type: ignore[attr-defined]
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # User operations
    @_translate_errors
    async def add_user(self, user: UserAccount) -> UserAccount:
        col = self._db[UserAccount.collection_name]
        await col.insert_one(self._prepare_insert(user), session=self._session.get())
        return user

    @_translate_errors
    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._session.get())
        return self._decode(UserAccount, doc)

    @_translate_errors
    async def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        col = self._db[UserAccount.collection_name]
        doc = await col.find_one({"email": email}, session=self._session.get())
        return self._decode(UserAccount, doc)

    @_translate_errors
    async def get_users(self) -> Iterable[UserAccount]:
        col = self._db[UserAccount.collection_name]
        cursor = col.find({}, session=self._session.get()).sort("created_at", ASCENDING)
        return self._decode_all(UserAccount, await cursor.to_list(length=None))

    # Credit transactions
    @_translate_errors
    async def add_credit_transaction(self, tx: CreditTransaction) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        await col.insert_one(self._prepare_insert(tx), session=self._session.get())
        return tx

    @_translate_errors
    async def get_credit_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one({"_id": transaction_id}, session=self._session.get())
        return self._decode(CreditTransaction, doc)

    @_translate_errors
    async def find_credit_transaction_by_no(
        self, transaction_no: str
    ) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one({"transaction_no": transaction_no}, session=self._session.get())
        return self._decode(CreditTransaction, doc)

    @_translate_errors
    async def find_grant_by_order_no(self, order_no: str) -> Optional[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        doc = await col.find_one(
            {"order_no": order_no, "transaction_type": TransactionType.GRANT.value},
            session=self._session.get(),
        )
        return self._decode(CreditTransaction, doc)

    @_translate_errors
    async def get_credit_transactions(self, user_id: str) -> List[CreditTransaction]:
        col = self._db[CreditTransaction.collection_name]
        cursor = col.find({"user_id": user_id}, session=self._session.get()).sort(
            "created_at", ASCENDING
        )
        return self._decode_all(CreditTransaction, await cursor.to_list(length=None))

    @_translate_errors
    async def lock_active_grants(self, user_id: str) -> List[CreditTransaction]:
        session = self._session.get()
        if session is None:
            raise RuntimeError("lock_active_grants must be called inside transaction()")

        await self._db[_USER_LOCKS].find_one_and_update(
            {"_id": user_id},
            {"$inc": {"version": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        col = self._db[CreditTransaction.collection_name]
        cursor = col.find(
            {
                "user_id": user_id,
                "transaction_type": TransactionType.GRANT.value,
                "status": CreditStatus.ACTIVE.value,
            },
            session=session,
        )
        return self._decode_all(CreditTransaction, await cursor.to_list(length=None))

    @_translate_errors
    async def update_remaining_credits(
        self, tx: CreditTransaction, expected_remaining: int
    ) -> CreditTransaction:
        col = self._db[CreditTransaction.collection_name]
        result = await col.update_one(
            {"_id": tx.id, "remaining_credits": expected_remaining},
            {"$set": {"remaining_credits": tx.remaining_credits, "status": tx.status.value}},
            session=self._session.get(),
        )
        if result.matched_count == 0:
            raise TransientStoreFailure(
                "credit row changed concurrently",
                {"transaction_id": tx.id, "expected_remaining": expected_remaining},
            )
        return tx

    @_translate_errors
    async def expire_credit_transactions(self, as_of: datetime) -> int:
        col = self._db[CreditTransaction.collection_name]
        result = await col.update_many(
            {"status": CreditStatus.ACTIVE.value, "expires_at": {"$lte": as_of}},
            {"$set": {"status": CreditStatus.EXPIRED.value}},
            session=self._session.get(),
        )
        return result.modified_count

    # Ledger
    @_translate_errors
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry), session=self._session.get())
        return entry

    @_translate_errors
    async def get_ledger_entries(self, user_id: str) -> List[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        cursor = col.find({"user_id": user_id}, session=self._session.get()).sort(
            "created_at", ASCENDING
        )
        return self._decode_all(LedgerEntry, await cursor.to_list(length=None))
