from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseDBManager
from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Structured audit logger that writes to the database and a file.

    DB logging uses the `LedgerEntry` model and the configured
    `BaseDBManager`; inside a `transaction()` the entry commits or rolls back
    with the operation it describes. The file mirror is append-only,
    line-delimited JSON for log aggregators.
    """

    def __init__(self, db: BaseDBManager, file_path: Path) -> None:
        self._db = db
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        transaction_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.TRANSACTION,
            user_id=user_id,
            message=message,
            details=details,
            transaction_id=transaction_id,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LedgerEntry:
        return await self._log(
            LedgerEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            transaction_id=None,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> LedgerEntry:
        return await self._log(
            LedgerEventType.SYSTEM,
            user_id=None,
            message=message,
            details=details,
            transaction_id=None,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: LedgerEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        transaction_id: Optional[str],
        correlation_id: Optional[str],
    ) -> LedgerEntry:
        entry = LedgerEntry(
            event_type=event_type,
            user_id=user_id,
            transaction_id=transaction_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        await self._db.add_ledger_entry(entry)

        # The file mirror never fails the operation
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning(
                "Could not mirror ledger entry to %s: %s",
                self._file_path,
                exc,
                extra={"user_id": user_id, "correlation_id": correlation_id},
            )
        return entry
