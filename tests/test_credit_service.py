from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from pydantic import ValidationError

from credit_ledger.exceptions import (
    DuplicateTransaction,
    InsufficientCredits,
    InvalidAmount,
    NotFound,
    TransientStoreFailure,
)
from credit_ledger.models.ledger import LedgerEventType
from credit_ledger.models.transaction import (
    ConsumeOptions,
    ConsumeResult,
    CreditStatus,
    GrantOptions,
    TransactionScene,
    TransactionType,
)


def _grants(rows):
    return [r for r in rows if r.transaction_type is TransactionType.GRANT]


def _consumes(rows):
    return [r for r in rows if r.transaction_type is TransactionType.CONSUME]


@pytest.mark.asyncio
async def test_grant_then_consume(service, make_user):
    await make_user("user-1")

    grant = await service.grant(
        "user-1", 50, TransactionScene.SIGNUP, GrantOptions(expires_in_days=365)
    )
    assert grant.remaining_credits == 50
    assert grant.status is CreditStatus.ACTIVE
    assert await service.remaining_balance("user-1") == 50

    result = await service.consume("user-1", 2, TransactionScene.MEME_GENERATION)
    assert result.consumed == 2
    assert result.transactions == [grant.id]

    assert await service.remaining_balance("user-1") == 48
    stored = await service.get_transaction(grant.id)
    assert stored.remaining_credits == 48
    assert stored.status is CreditStatus.ACTIVE

    audit = await service.get_transaction(result.consume_transaction_id)
    assert audit.transaction_type is TransactionType.CONSUME
    assert audit.credits == 2
    assert audit.remaining_credits == 0
    assert audit.metadata["consumed_from"] == [{"transaction_id": grant.id, "credits": 2}]


@pytest.mark.asyncio
async def test_consume_draws_soonest_expiring_first(service, make_user):
    await make_user("user-1")
    a = await service.grant("user-1", 3, "gift", GrantOptions(expires_in_days=5))
    b = await service.grant("user-1", 5, "gift", GrantOptions(expires_in_days=30))

    result = await service.consume("user-1", 4, "meme-generation")

    assert [(x.transaction_id, x.credits) for x in result.allocations] == [(a.id, 3), (b.id, 1)]
    a_row = await service.get_transaction(a.id)
    b_row = await service.get_transaction(b.id)
    assert a_row.remaining_credits == 0
    assert a_row.status is CreditStatus.USED
    assert b_row.remaining_credits == 4
    assert b_row.status is CreditStatus.ACTIVE


@pytest.mark.asyncio
async def test_never_expiring_grants_are_drawn_last(service, make_user):
    await make_user("user-1")
    forever = await service.grant("user-1", 5, "award")
    dated = await service.grant("user-1", 5, "gift", GrantOptions(expires_in_days=100))

    result = await service.consume("user-1", 6, "meme-generation")

    assert [x.transaction_id for x in result.allocations] == [dated.id, forever.id]


@pytest.mark.asyncio
async def test_grant_expiring_now_is_not_spendable(service, make_user):
    await make_user("user-1")
    await service.grant("user-1", 50, "gift", GrantOptions(expires_in_days=0))

    assert await service.remaining_balance("user-1") == 0
    with pytest.raises(InsufficientCredits) as excinfo:
        await service.consume("user-1", 2, "meme-generation")
    assert excinfo.value.available == 0


@pytest.mark.asyncio
async def test_lapsed_credits_excluded_before_sweep(service, make_user, clock):
    await make_user("user-1")
    grant = await service.grant("user-1", 10, "gift", GrantOptions(expires_in_days=1))

    clock.advance(days=2)

    assert await service.remaining_balance("user-1") == 0
    with pytest.raises(InsufficientCredits):
        await service.consume("user-1", 1, "meme-generation")
    # Still ACTIVE in storage until the sweep runs
    assert (await service.get_transaction(grant.id)).status is CreditStatus.ACTIVE

    assert await service.sweep_expired() == 1
    assert (await service.get_transaction(grant.id)).status is CreditStatus.EXPIRED
    assert await service.sweep_expired() == 0


@pytest.mark.asyncio
async def test_sweep_leaves_live_and_used_rows_alone(service, make_user, clock):
    await make_user("user-1")
    live = await service.grant("user-1", 5, "gift", GrantOptions(expires_in_days=30))
    spent = await service.grant("user-1", 2, "gift", GrantOptions(expires_in_days=1))
    await service.consume("user-1", 2, "meme-generation")

    clock.advance(days=2)
    assert await service.sweep_expired() == 0

    assert (await service.get_transaction(live.id)).status is CreditStatus.ACTIVE
    assert (await service.get_transaction(spent.id)).status is CreditStatus.USED
    assert await service.remaining_balance("user-1") == 5


@pytest.mark.asyncio
async def test_concurrent_consumes_cannot_overspend(service, make_user):
    await make_user("user-1")
    await service.grant("user-1", 10, "payment")

    results = await asyncio.gather(
        service.consume("user-1", 10, "meme-generation"),
        service.consume("user-1", 10, "meme-generation"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConsumeResult) for r in results) == 1
    assert sum(isinstance(r, InsufficientCredits) for r in results) == 1
    assert await service.remaining_balance("user-1") == 0
    rows = await service.get_credit_history("user-1")
    assert all(r.remaining_credits >= 0 for r in rows)
    assert len(_consumes(rows)) == 1


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_rows_untouched(service, make_user, db):
    await make_user("user-1")
    await service.grant("user-1", 5, "gift")
    before = await service.get_credit_history("user-1")

    with pytest.raises(InsufficientCredits, match="insufficient credits") as excinfo:
        await service.consume("user-1", 6, "meme-generation")
    assert excinfo.value.requested == 6
    assert excinfo.value.available == 5

    assert await service.get_credit_history("user-1") == before
    entries = await db.get_ledger_entries("user-1")
    assert entries[-1].event_type is LedgerEventType.ERROR


@pytest.mark.asyncio
async def test_failed_consume_rolls_back_every_write(service, make_user, ledger, monkeypatch):
    await make_user("user-1")
    a = await service.grant("user-1", 3, "gift", GrantOptions(expires_in_days=5))
    b = await service.grant("user-1", 5, "gift", GrantOptions(expires_in_days=30))

    async def boom(*args, **kwargs):
        raise RuntimeError("audit log unavailable")

    monkeypatch.setattr(ledger, "log_transaction", boom)

    with pytest.raises(RuntimeError):
        await service.consume("user-1", 4, "meme-generation")

    assert (await service.get_transaction(a.id)).remaining_credits == 3
    assert (await service.get_transaction(b.id)).remaining_credits == 5
    assert _consumes(await service.get_credit_history("user-1")) == []
    assert await service.remaining_balance("user-1") == 8


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once_applied(service, make_user, db, monkeypatch):
    await make_user("user-1")
    grant = await service.grant("user-1", 10, "gift")

    original = db.update_remaining_credits
    calls = {"n": 0}

    async def flaky(tx, expected_remaining):
        calls["n"] += 1
        if calls["n"] == 1:
            raise TransientStoreFailure("serialization failure")
        return await original(tx, expected_remaining)

    monkeypatch.setattr(db, "update_remaining_credits", flaky)

    result = await service.consume("user-1", 4, "meme-generation")

    assert result.consumed == 4
    assert calls["n"] == 2
    assert (await service.get_transaction(grant.id)).remaining_credits == 6
    assert len(_consumes(await service.get_credit_history("user-1"))) == 1


@pytest.mark.asyncio
async def test_retry_after_lost_commit_returns_committed_consume(
    service, make_user, db, monkeypatch
):
    await make_user("user-1")
    grant = await service.grant("user-1", 3, "gift")

    original = db.transaction
    state = {"depth": 0, "failed": False}

    @asynccontextmanager
    async def commit_then_fail():
        state["depth"] += 1
        try:
            async with original():
                yield
        finally:
            state["depth"] -= 1
        if state["depth"] == 0 and not state["failed"]:
            state["failed"] = True
            raise TransientStoreFailure("commit outcome unknown")

    monkeypatch.setattr(db, "transaction", commit_then_fail)

    result = await service.consume("user-1", 2, "meme-generation")

    assert result.consumed == 2
    assert result.transactions == [grant.id]
    assert await service.remaining_balance("user-1") == 1
    assert len(_consumes(await service.get_credit_history("user-1"))) == 1


@pytest.mark.asyncio
async def test_transient_failure_gives_up_after_max_retries(service, make_user, db, monkeypatch):
    await make_user("user-1")
    await service.grant("user-1", 10, "gift")

    async def always_fail(tx, expected_remaining):
        raise TransientStoreFailure("store unavailable")

    monkeypatch.setattr(db, "update_remaining_credits", always_fail)

    with pytest.raises(TransientStoreFailure):
        await service.consume("user-1", 4, "meme-generation")
    assert await service.remaining_balance("user-1") == 10


@pytest.mark.asyncio
async def test_consume_with_same_transaction_no_charges_once(service, make_user):
    await make_user("user-1")
    await service.grant("user-1", 10, "gift")

    first = await service.consume(
        "user-1", 3, "meme-generation", ConsumeOptions(transaction_no="req-1")
    )
    with pytest.raises(DuplicateTransaction):
        await service.consume(
            "user-1", 3, "meme-generation", ConsumeOptions(transaction_no="req-1")
        )

    assert await service.remaining_balance("user-1") == 7
    found = await service.find_transaction("req-1")
    assert found is not None
    assert found.id == first.consume_transaction_id


@pytest.mark.asyncio
async def test_grant_for_order_is_idempotent(service, make_user):
    await make_user("user-1")

    tx1, created1 = await service.grant_for_order("user-1", 100, "order-1")
    tx2, created2 = await service.grant_for_order("user-1", 100, "order-1")

    assert created1 is True
    assert created2 is False
    assert tx1.id == tx2.id
    assert await service.remaining_balance("user-1") == 100
    assert (await service.find_grant_by_order_no("order-1")).id == tx1.id


@pytest.mark.asyncio
async def test_plain_grant_rejects_duplicate_order(service, make_user, db):
    await make_user("user-1")
    await service.grant("user-1", 100, "payment", GrantOptions(order_no="order-1"))

    with pytest.raises(DuplicateTransaction):
        await service.grant("user-1", 100, "payment", GrantOptions(order_no="order-1"))

    assert await service.remaining_balance("user-1") == 100
    entries = await db.get_ledger_entries("user-1")
    assert entries[-1].event_type is LedgerEventType.ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 1.5, True, "3"])
async def test_invalid_amounts_rejected(service, make_user, amount):
    await make_user("user-1")
    await service.grant("user-1", 10, "gift")

    with pytest.raises(InvalidAmount):
        await service.grant("user-1", amount, "gift")
    with pytest.raises(InvalidAmount):
        await service.consume("user-1", amount, "meme-generation")
    assert await service.remaining_balance("user-1") == 10


@pytest.mark.asyncio
async def test_unknown_user(service):
    with pytest.raises(NotFound):
        await service.grant("ghost", 10, "gift")
    with pytest.raises(NotFound):
        await service.consume("ghost", 1, "meme-generation")
    assert await service.remaining_balance("ghost") == 0


@pytest.mark.asyncio
async def test_unknown_scene_rejected(service, make_user):
    await make_user("user-1")
    with pytest.raises(ValueError):
        await service.grant("user-1", 10, "lottery")


def test_options_reject_unknown_keys():
    with pytest.raises(ValidationError):
        GrantOptions(expires_in_days=5, bonus=True)
    with pytest.raises(ValidationError):
        ConsumeOptions(priority="high")
    with pytest.raises(ValidationError):
        GrantOptions(expires_in_days=-1)


@pytest.mark.asyncio
async def test_ledger_conservation(service, make_user, clock):
    await make_user("user-1")
    await service.grant("user-1", 3, "gift", GrantOptions(expires_in_days=5))
    await service.grant("user-1", 20, "payment", GrantOptions(expires_in_days=30))
    await service.grant("user-1", 7, "award")
    for amount in (2, 4, 5, 1):
        await service.consume("user-1", amount, "meme-generation")
    clock.advance(days=10)
    await service.sweep_expired()
    await service.consume("user-1", 3, "meme-generation")

    rows = await service.get_credit_history("user-1")
    grants = _grants(rows)
    for row in grants:
        assert 0 <= row.remaining_credits <= row.credits

    # Every consumed credit came out of exactly one grant row
    drawn = sum(r.credits - r.remaining_credits for r in grants)
    assert drawn == sum(r.credits for r in _consumes(rows))
    per_row = {}
    for audit in _consumes(rows):
        for alloc in audit.metadata["consumed_from"]:
            tx_id = alloc["transaction_id"]
            per_row[tx_id] = per_row.get(tx_id, 0) + alloc["credits"]
    for row in grants:
        assert per_row.get(row.id, 0) == row.credits - row.remaining_credits

    expected = sum(
        r.remaining_credits
        for r in grants
        if r.status is CreditStatus.ACTIVE and not r.is_expired(clock.now)
    )
    assert await service.remaining_balance("user-1") == expected


@pytest.mark.asyncio
async def test_summary_and_expiring_queries(service, make_user, clock):
    await make_user("user-1")
    soon = await service.grant("user-1", 3, "gift", GrantOptions(expires_in_days=5))
    await service.grant("user-1", 10, "payment", GrantOptions(expires_in_days=60))
    await service.consume("user-1", 1, "meme-generation")

    expiring = await service.get_expiring_credits_in_days("user-1", 7)
    assert [r.id for r in expiring] == [soon.id]
    assert await service.get_total_consumed("user-1") == 1

    clock.advance(days=6)
    summary = await service.get_credit_summary("user-1")
    assert summary.balance == 10
    assert summary.total_granted == 13
    assert summary.total_consumed == 1
    assert summary.total_expired == 2
    assert summary.records == 3


@pytest.mark.asyncio
async def test_get_transaction_not_found(service):
    with pytest.raises(NotFound):
        await service.get_transaction("missing")
    assert await service.find_transaction("missing") is None


@pytest.mark.asyncio
async def test_memory_store_rejects_duplicate_user_id(db, make_user):
    await make_user("user-1", email="a@example.com")

    with pytest.raises(DuplicateTransaction):
        await make_user("user-1", email="b@example.com")
    assert (await db.get_user("user-1")).email == "a@example.com"
