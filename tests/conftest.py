from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import pytest

from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.user import UserAccount
from credit_ledger.services.credit_service import CreditService


class FakeClock:
    """Settable stand-in for `utcnow`."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path) -> LedgerLogger:
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.log")


@pytest.fixture
def service(db, ledger, clock) -> CreditService:
    return CreditService(db=db, ledger=ledger, retry_backoff=0, clock=clock)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="",
        mongo_uri="",
        ledger_log_path=tmp_path / "ledger.log",
    )


@pytest.fixture
def make_user(db) -> Callable[..., Awaitable[UserAccount]]:
    async def _make(user_id: str = "user-1", email: Optional[str] = None) -> UserAccount:
        return await db.add_user(UserAccount(id=user_id, email=email))

    return _make
