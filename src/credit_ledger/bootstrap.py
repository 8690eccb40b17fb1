from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .logging.ledger_logger import LedgerLogger
from .services.credit_service import CreditService
from .services.expiration_service import ExpirationService


logger = logging.getLogger(__name__)


@dataclass
class LedgerStack:
    """Everything a host process needs, built once and passed explicitly."""

    settings: Settings
    db: BaseDBManager
    ledger: LedgerLogger
    credit_service: CreditService
    expiration_service: ExpirationService


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.database_url:
        from .db.sql import SQLAlchemyDBManager

        return SQLAlchemyDBManager.from_url(settings.database_url)
    if settings.mongo_uri:
        from .db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    logger.warning("No database configured; using the in-memory ledger store")
    return InMemoryDBManager()


def build_stack(settings: Settings, db: Optional[BaseDBManager] = None) -> LedgerStack:
    db = db or create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=settings.ledger_log_path)
    credit_service = CreditService(db=db, ledger=ledger)
    expiration_service = ExpirationService(
        db=db, ledger=ledger, credit_service=credit_service, settings=settings
    )
    return LedgerStack(
        settings=settings,
        db=db,
        ledger=ledger,
        credit_service=credit_service,
        expiration_service=expiration_service,
    )
