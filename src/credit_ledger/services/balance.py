"""
Balance math over credit transaction rows.

Everything here is a pure function of the rows and a reference time; the
service feeds it rows straight from the store. A row whose `expires_at` has
passed counts as zero even while its stored status is still ACTIVE, so
balances never depend on the expiry sweep having run.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Tuple

from ..exceptions import InsufficientCredits
from ..models.transaction import CreditStatus, CreditTransaction, TransactionType


def is_spendable(row: CreditTransaction, as_of: datetime) -> bool:
    return (
        row.transaction_type is TransactionType.GRANT
        and row.status is CreditStatus.ACTIVE
        and row.remaining_credits > 0
        and not row.is_expired(as_of)
    )


def remaining_balance(rows: Iterable[CreditTransaction], as_of: datetime) -> int:
    return sum(row.remaining_credits for row in rows if is_spendable(row, as_of))


def draw_order(rows: Iterable[CreditTransaction], as_of: datetime) -> List[CreditTransaction]:
    """
    Spendable rows, soonest-expiring first. Rows that never expire go last;
    ties are broken by creation time.
    """
    spendable = [row for row in rows if is_spendable(row, as_of)]
    return sorted(
        spendable,
        key=lambda r: (
            r.expires_at is None,
            r.expires_at or datetime.max,
            r.created_at,
        ),
    )


def allocate(
    rows: Iterable[CreditTransaction], amount: int, as_of: datetime
) -> List[Tuple[CreditTransaction, int]]:
    """
    Plan how `amount` is drawn from `rows` without mutating them.

    Raises InsufficientCredits when the spendable total is short.
    """
    ordered = draw_order(rows, as_of)
    available = sum(r.remaining_credits for r in ordered)
    if available < amount:
        raise InsufficientCredits(requested=amount, available=available)

    plan: List[Tuple[CreditTransaction, int]] = []
    outstanding = amount
    for row in ordered:
        if outstanding == 0:
            break
        take = min(row.remaining_credits, outstanding)
        plan.append((row, take))
        outstanding -= take
    return plan
