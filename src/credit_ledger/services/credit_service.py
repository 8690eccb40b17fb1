from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar, Union
from uuid import uuid4

from ..db.base import BaseDBManager
from ..exceptions import (
    DuplicateTransaction,
    InsufficientCredits,
    InvalidAmount,
    NotFound,
    TransientStoreFailure,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.base import utcnow
from ..models.transaction import (
    Allocation,
    ConsumeOptions,
    ConsumeResult,
    CreditStatus,
    CreditSummary,
    CreditTransaction,
    GrantOptions,
    TransactionScene,
    TransactionType,
)
from ..models.user import UserAccount
from . import balance


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CreditService:
    """
    Prepaid credit ledger: grant, consume and expire.

    Each mutating operation is one `transaction()` on the store, so callers
    see all-or-nothing results. A unit aborted by the store
    (TransientStoreFailure) is retried up to `max_retries` times. The
    `transaction_no` is fixed before the first attempt; a retry first looks
    it up, returns the committed row if the aborted attempt landed after
    all, and otherwise re-runs the unit against freshly read rows.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        max_retries: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._clock = clock

    async def remaining_balance(self, user_id: str) -> int:
        """Spendable credits; lapsed rows count as zero even before a sweep."""
        rows = await self._db.get_credit_transactions(user_id)
        return balance.remaining_balance(rows, self._clock())

    async def grant(
        self,
        user_id: str,
        amount: int,
        scene: Union[TransactionScene, str],
        options: Optional[GrantOptions] = None,
        correlation_id: str | None = None,
    ) -> CreditTransaction:
        """
        Create one ACTIVE grant row worth `amount`.

        The service does not deduplicate payment deliveries by itself; the
        unique index on `(order_no, transaction_type)` rejects a second grant
        for the same order with DuplicateTransaction. Webhook handlers should
        go through `grant_for_order`.
        """
        self._validate_amount(amount)
        scene = TransactionScene(scene)
        options = options or GrantOptions()
        transaction_no = options.transaction_no or uuid4().hex

        async def unit() -> CreditTransaction:
            async with self._db.transaction():
                user = await self._require_user(user_id)
                now = self._clock()
                expires_at = None
                if options.expires_in_days is not None:
                    expires_at = now + timedelta(days=options.expires_in_days)

                tx = CreditTransaction(
                    user_id=user_id,
                    user_email=options.user_email or user.email,
                    transaction_type=TransactionType.GRANT,
                    transaction_scene=scene,
                    credits=amount,
                    remaining_credits=amount,
                    status=CreditStatus.ACTIVE,
                    expires_at=expires_at,
                    created_at=now,
                    order_no=options.order_no,
                    subscription_no=options.subscription_no,
                    transaction_no=transaction_no,
                    description=options.description,
                    metadata=dict(options.metadata),
                )
                tx = await self._db.add_credit_transaction(tx)

                await self._ledger.log_transaction(
                    user_id=user_id,
                    message="Credits granted",
                    details={
                        "amount": amount,
                        "scene": scene.value,
                        "expires_at": expires_at.isoformat() if expires_at else None,
                        "order_no": options.order_no,
                    },
                    transaction_id=tx.id,
                    correlation_id=correlation_id,
                )
                return tx

        try:
            tx = await self._retrying(
                unit,
                recover=lambda: self._db.find_credit_transaction_by_no(transaction_no),
            )
        except DuplicateTransaction as exc:
            await self._ledger.log_error(
                message="Duplicate grant rejected",
                details={"amount": amount, "order_no": options.order_no, **exc.details},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        logger.info(
            "Granted %s credits to %s (%s)",
            amount,
            user_id,
            scene.value,
            extra={"user_id": user_id, "transaction_id": tx.id},
        )
        return tx

    async def grant_for_order(
        self,
        user_id: str,
        amount: int,
        order_no: str,
        scene: Union[TransactionScene, str] = TransactionScene.PAYMENT,
        options: Optional[GrantOptions] = None,
        correlation_id: str | None = None,
    ) -> Tuple[CreditTransaction, bool]:
        """
        Grant for a paid order at most once.

        Returns the grant row and whether this call created it. A redelivered
        webhook, or a concurrent one that won the insert, gets the existing
        row back.
        """
        existing = await self._db.find_grant_by_order_no(order_no)
        if existing is not None:
            logger.info("Order %s already granted, skipping", order_no)
            return existing, False

        options = (options or GrantOptions()).model_copy(update={"order_no": order_no})
        try:
            tx = await self.grant(user_id, amount, scene, options, correlation_id=correlation_id)
        except DuplicateTransaction:
            existing = await self._db.find_grant_by_order_no(order_no)
            if existing is None:
                raise
            return existing, False
        return tx, True

    async def consume(
        self,
        user_id: str,
        amount: int,
        scene: Union[TransactionScene, str],
        options: Optional[ConsumeOptions] = None,
        correlation_id: str | None = None,
    ) -> ConsumeResult:
        """
        Draw `amount` credits from the user's active grants, soonest-expiring
        first, and record one CONSUME audit row.

        Balance is re-checked inside the unit; InsufficientCredits leaves
        every row untouched.
        """
        self._validate_amount(amount)
        scene = TransactionScene(scene)
        options = options or ConsumeOptions()
        transaction_no = options.transaction_no or uuid4().hex

        async def unit() -> ConsumeResult:
            async with self._db.transaction():
                await self._require_user(user_id)
                rows = await self._db.lock_active_grants(user_id)
                now = self._clock()
                try:
                    plan = balance.allocate(rows, amount, now)
                except InsufficientCredits as exc:
                    raise InsufficientCredits(amount, exc.available, user_id=user_id) from None

                allocations: List[Allocation] = []
                for row, take in plan:
                    expected = row.remaining_credits
                    row.remaining_credits = expected - take
                    if row.remaining_credits == 0:
                        row.status = CreditStatus.USED
                    await self._db.update_remaining_credits(row, expected_remaining=expected)
                    allocations.append(Allocation(transaction_id=row.id or "", credits=take))

                audit = CreditTransaction(
                    user_id=user_id,
                    transaction_type=TransactionType.CONSUME,
                    transaction_scene=scene,
                    credits=amount,
                    remaining_credits=0,
                    status=CreditStatus.USED,
                    created_at=now,
                    transaction_no=transaction_no,
                    description=options.description,
                    metadata={
                        **options.metadata,
                        "consumed_from": [a.model_dump() for a in allocations],
                    },
                )
                audit = await self._db.add_credit_transaction(audit)

                await self._ledger.log_transaction(
                    user_id=user_id,
                    message="Credits consumed",
                    details={
                        "amount": amount,
                        "scene": scene.value,
                        "consumed_from": [a.model_dump() for a in allocations],
                        "description": options.description or "",
                    },
                    transaction_id=audit.id,
                    correlation_id=correlation_id,
                )
                return ConsumeResult(
                    consumed=amount,
                    transactions=[a.transaction_id for a in allocations],
                    allocations=allocations,
                    consume_transaction_id=audit.id,
                )

        async def recover() -> Optional[ConsumeResult]:
            row = await self._db.find_credit_transaction_by_no(transaction_no)
            return self._result_from_audit(row) if row is not None else None

        try:
            result = await self._retrying(unit, recover=recover)
        except InsufficientCredits as exc:
            await self._ledger.log_error(
                message="Insufficient credits for consumption",
                details={"requested": amount, "available": exc.available, "scene": scene.value},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        logger.info(
            "Consumed %s credits from %s (%s)",
            amount,
            user_id,
            scene.value,
            extra={"user_id": user_id, "transaction_id": result.consume_transaction_id},
        )
        return result

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Mark every ACTIVE row whose `expires_at` has passed as EXPIRED.
        Idempotent; touches nothing consume would still spend.
        """
        as_of = now or self._clock()

        async def unit() -> int:
            async with self._db.transaction():
                count = await self._db.expire_credit_transactions(as_of)
                if count:
                    await self._ledger.log_system(
                        message="Expired credits swept",
                        details={"expired_rows": count, "as_of": as_of.isoformat()},
                    )
                return count

        count = await self._retrying(unit)
        logger.info("Expiry sweep marked %s rows expired", count)
        return count

    # Query helpers

    async def get_transaction(self, transaction_id: str) -> CreditTransaction:
        tx = await self._db.get_credit_transaction(transaction_id)
        if tx is None:
            raise NotFound("credit transaction", transaction_id)
        return tx

    async def find_transaction(self, transaction_no: str) -> Optional[CreditTransaction]:
        """Look up a row by its correlation token, e.g. before retrying a consume."""
        return await self._db.find_credit_transaction_by_no(transaction_no)

    async def find_grant_by_order_no(self, order_no: str) -> Optional[CreditTransaction]:
        return await self._db.find_grant_by_order_no(order_no)

    async def get_credit_history(self, user_id: str) -> List[CreditTransaction]:
        return await self._db.get_credit_transactions(user_id)

    async def get_expiring_credits_in_days(
        self, user_id: str, days: int
    ) -> List[CreditTransaction]:
        now = self._clock()
        cutoff = now + timedelta(days=days)
        rows = await self._db.get_credit_transactions(user_id)
        return [
            r
            for r in balance.draw_order(rows, now)
            if r.expires_at is not None and r.expires_at <= cutoff
        ]

    async def get_total_consumed(self, user_id: str) -> int:
        rows = await self._db.get_credit_transactions(user_id)
        return sum(r.credits for r in rows if r.transaction_type is TransactionType.CONSUME)

    async def get_credit_summary(self, user_id: str) -> CreditSummary:
        now = self._clock()
        rows = await self._db.get_credit_transactions(user_id)
        grants = [r for r in rows if r.transaction_type is TransactionType.GRANT]
        return CreditSummary(
            user_id=user_id,
            balance=balance.remaining_balance(rows, now),
            total_granted=sum(r.credits for r in grants),
            total_consumed=sum(
                r.credits for r in rows if r.transaction_type is TransactionType.CONSUME
            ),
            total_expired=sum(
                r.remaining_credits
                for r in grants
                if r.status is CreditStatus.EXPIRED
                or (r.status is CreditStatus.ACTIVE and r.is_expired(now))
            ),
            records=len(rows),
        )

    # Internals

    async def _retrying(
        self,
        unit: Callable[[], Awaitable[T]],
        recover: Optional[Callable[[], Awaitable[Optional[T]]]] = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            if attempt > 1 and recover is not None:
                # The aborted attempt may still have committed
                found = await recover()
                if found is not None:
                    return found
            try:
                return await unit()
            except TransientStoreFailure as exc:
                if attempt > self._max_retries:
                    raise
                logger.warning(
                    "Ledger unit aborted (attempt %s/%s): %s",
                    attempt,
                    self._max_retries + 1,
                    exc.message,
                )
                await asyncio.sleep(self._retry_backoff * attempt)
            except DuplicateTransaction:
                # An earlier attempt may have committed before its outcome got lost
                if attempt == 1 or recover is None:
                    raise
                found = await recover()
                if found is None:
                    raise
                return found

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await self._db.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    @staticmethod
    def _validate_amount(amount: object) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(amount)

    @staticmethod
    def _result_from_audit(row: CreditTransaction) -> ConsumeResult:
        allocations = [
            Allocation.model_validate(a) for a in row.metadata.get("consumed_from", [])
        ]
        return ConsumeResult(
            consumed=row.credits,
            transactions=[a.transaction_id for a in allocations],
            allocations=allocations,
            consume_transaction_id=row.id,
        )
