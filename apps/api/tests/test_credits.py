import asyncio
from datetime import timedelta

import pytest

from exceptions import InsufficientCreditsError, OperationTimeoutError
from models.ledger_entry import LedgerKind
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine, find_debit_anchor
from services.ledger_store import LedgerStore
from services.locks import KeyedLock


def _engine(db, clock, locks=None):
    return ConsumptionEngine(LedgerStore(db), locks if locks is not None else KeyedLock(), clock=clock)


@pytest.mark.asyncio
async def test_fifo_debit_anchors_on_batch_that_crosses_amount(db, clock):
    engine = _engine(db, clock)
    now = clock()
    g1 = await engine.grant("user-1", 10, LedgerKind.BONUS_GRANT, expires_at=now + timedelta(days=30))
    clock.advance(seconds=1)
    g2 = await engine.grant("user-1", 20, LedgerKind.BONUS_GRANT, expires_at=now + timedelta(days=60))
    clock.advance(seconds=1)
    g3 = await engine.grant("user-1", 15, LedgerKind.PERMANENT_GRANT)
    clock.advance(seconds=1)

    debit = await engine.consume("user-1", 25, "generation")

    assert debit.amount == -25
    assert debit.kind == LedgerKind.CONSUMPTION.value
    assert debit.source_transaction_id == g2.transaction_id
    assert debit.source_transaction_id not in {g1.transaction_id, g3.transaction_id}
    assert debit.expires_at == now + timedelta(days=60)

    balance = await BalanceCalculator(LedgerStore(db), clock=clock).get_balance("user-1")
    assert balance.left_credits == 20
    assert balance.permanent_credits == 15
    assert balance.bonus_credits == 5


@pytest.mark.asyncio
async def test_grant_then_consume_everything_leaves_two_entries(db, clock):
    engine = _engine(db, clock)
    await engine.grant("user-1", 100, LedgerKind.PERMANENT_GRANT)
    clock.advance(seconds=1)
    await engine.consume("user-1", 100, "bulk")

    store = LedgerStore(db)
    entries = await store.list_for_user("user-1")
    assert [entry.amount for entry in entries] == [100, -100]
    balance = await BalanceCalculator(store, clock=clock).get_balance("user-1")
    assert balance.left_credits == 0
    assert balance.is_pro is False


@pytest.mark.asyncio
async def test_insufficient_credits_rejects_and_writes_nothing(db, clock):
    engine = _engine(db, clock)
    await engine.grant("user-1", 5, LedgerKind.SYSTEM_GRANT)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await engine.consume("user-1", 6, "too much")

    assert exc_info.value.required == 6
    assert exc_info.value.available == 5
    entries = await LedgerStore(db).list_for_user("user-1")
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_overdraft_flag_allows_negative_raw_total_but_display_is_floored(db, clock):
    engine = _engine(db, clock)
    await engine.grant("user-1", 5, LedgerKind.SYSTEM_GRANT)
    clock.advance(seconds=1)

    debit = await engine.consume("user-1", 8, "overdraft", allow_overdraft=True)

    assert debit.source_transaction_id is None
    calculator = BalanceCalculator(LedgerStore(db), clock=clock)
    assert await calculator.get_raw_total("user-1") == -3
    assert (await calculator.get_balance("user-1")).left_credits == 0


@pytest.mark.asyncio
async def test_expired_grants_do_not_count(db, clock):
    engine = _engine(db, clock)
    await engine.grant("user-1", 10, LedgerKind.BONUS_GRANT, expires_at=clock() + timedelta(hours=1))
    clock.advance(hours=2)

    with pytest.raises(InsufficientCreditsError):
        await engine.consume("user-1", 1, "late")


@pytest.mark.asyncio
async def test_invalid_amounts_are_rejected_before_any_write(db, clock):
    engine = _engine(db, clock)
    with pytest.raises(ValueError):
        await engine.consume("user-1", 0, "zero")
    with pytest.raises(ValueError):
        await engine.grant("user-1", -5, LedgerKind.SYSTEM_GRANT)
    with pytest.raises(ValueError):
        await engine.grant("user-1", 5, LedgerKind.CONSUMPTION)
    assert await LedgerStore(db).list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_concurrent_consumption_never_overspends(session_maker, clock):
    locks = KeyedLock()
    async with session_maker() as setup:
        await _engine(setup, clock, locks).grant("user-1", 100, LedgerKind.PERMANENT_GRANT)
    clock.advance(seconds=1)

    async def spend():
        async with session_maker() as session:
            try:
                await _engine(session, clock, locks).consume("user-1", 60, "parallel")
                return "ok"
            except InsufficientCreditsError:
                return "insufficient"

    outcomes = await asyncio.gather(spend(), spend())

    assert sorted(outcomes) == ["insufficient", "ok"]
    async with session_maker() as check:
        balance = await BalanceCalculator(LedgerStore(check), clock=clock).get_balance("user-1")
    assert balance.left_credits == 40
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_consume_times_out_while_user_is_locked(db, clock):
    locks = KeyedLock()
    engine = _engine(db, clock, locks)
    async with locks.hold("user-1"):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await engine.consume("user-1", 1, "blocked", timeout=0.05)
    assert exc_info.value.operation == "consume"
    assert await LedgerStore(db).list_for_user("user-1") == []


@pytest.mark.asyncio
async def test_new_user_bonus_is_issued_once(db, clock):
    engine = _engine(db, clock)
    first = await engine.grant_new_user_bonus("user-1", 10)
    assert first is not None and first.amount == 10
    second = await engine.grant_new_user_bonus("user-1", 10)

    assert second is None
    balance = await BalanceCalculator(LedgerStore(db), clock=clock).get_balance("user-1")
    assert balance.left_credits == 10
    assert balance.is_recharged is False


@pytest.mark.asyncio
async def test_bonus_expiry_sweep_offsets_each_grant_once(db, clock):
    engine = _engine(db, clock)
    grant = await engine.grant("user-1", 7, LedgerKind.BONUS_GRANT, expires_at=clock() + timedelta(days=1))
    await engine.grant("user-1", 3, LedgerKind.PERMANENT_GRANT)
    clock.advance(days=2)

    assert await engine.expire_bonus_grants() == 1
    assert await engine.expire_bonus_grants() == 0

    store = LedgerStore(db)
    offsets = [entry for entry in await store.list_for_user("user-1") if entry.kind == LedgerKind.BONUS_EXPIRY.value]
    assert len(offsets) == 1
    assert offsets[0].amount == -7
    assert offsets[0].source_transaction_id == grant.transaction_id
    balance = await BalanceCalculator(store, clock=clock).get_balance("user-1")
    assert balance.left_credits == 3


def test_find_debit_anchor_returns_none_when_total_falls_short():
    class Entry:
        def __init__(self, amount):
            self.amount = amount

    entries = [Entry(4), Entry(-2), Entry(3)]
    assert find_debit_anchor(entries, 5) is entries[2]
    assert find_debit_anchor(entries, 6) is None
