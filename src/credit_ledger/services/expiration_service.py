from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ..config import Settings
from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.transaction import CreditTransaction, GrantOptions, TransactionScene
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class ExpirationService:
    """
    Maintenance jobs around the ledger: the scheduled expiry sweep and the
    signup bonus for newly registered users.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        credit_service: CreditService,
        settings: Settings,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._credit_service = credit_service
        self._settings = settings

    async def check_credit_expiration(self, as_of: Optional[datetime] = None) -> int:
        """Run one expiry sweep and return how many rows were marked expired."""
        return await self._credit_service.sweep_expired(now=as_of)

    async def run_periodic_sweep(
        self, interval_seconds: float, stop: Optional[asyncio.Event] = None
    ) -> None:
        """Sweep every `interval_seconds` until `stop` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.check_credit_expiration()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def grant_initial_credits(
        self, user_id: str, correlation_id: str | None = None
    ) -> Optional[CreditTransaction]:
        """
        Grant the configured signup bonus.

        Returns None when the bonus is disabled or the user already has any
        credit record, so calling it twice for one user is harmless.
        """
        if not self._settings.initial_credits_enabled:
            return None

        existing = await self._db.get_credit_transactions(user_id)
        if existing:
            logger.info(
                "Skipping initial credits for %s: %s record(s) exist", user_id, len(existing)
            )
            return None

        tx = await self._credit_service.grant(
            user_id=user_id,
            amount=self._settings.initial_credits_amount,
            scene=TransactionScene.SIGNUP,
            options=GrantOptions(
                expires_in_days=self._settings.initial_credits_valid_days,
                description=self._settings.initial_credits_description,
            ),
            correlation_id=correlation_id,
        )

        await self._ledger.log_transaction(
            user_id=user_id,
            message="Initial credits allocated",
            details={
                "amount": self._settings.initial_credits_amount,
                "valid_days": self._settings.initial_credits_valid_days,
            },
            transaction_id=tx.id,
            correlation_id=correlation_id,
        )
        return tx
