import asyncio
from datetime import timedelta

import pytest

from exceptions import NotFoundError, ReconciliationError, StorageConflictError
from models.ledger_entry import LedgerKind
from models.order import OrderStatus
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.reconciliation import (
    OrderReconciliation,
    create_order,
    get_order,
    handle_order_paid,
    reconcile_order_by_id,
)


def _reconciliation(db, clock, locks=None):
    store = LedgerStore(db)
    return OrderReconciliation(store, ConsumptionEngine(store, locks if locks is not None else KeyedLock(), clock=clock))


async def _order_entries(db, order_id):
    return [entry for entry in await LedgerStore(db).list_for_user("user-1") if entry.related_order_id == order_id]


@pytest.mark.asyncio
async def test_reconcile_twice_grants_once(db, clock):
    order = await create_order(db, "user-1", 50, amount_cents=1099, currency="usd", order_id="ord-1")
    order.status = OrderStatus.PAID.value
    await db.commit()
    reconciliation = _reconciliation(db, clock)

    assert await reconciliation.reconcile(order) is True
    assert await reconciliation.reconcile(order) is False

    entries = await _order_entries(db, "ord-1")
    assert len(entries) == 1
    assert entries[0].amount == 50
    balance = await BalanceCalculator(LedgerStore(db), clock=clock).get_balance("user-1")
    assert balance.left_credits == 50
    assert balance.is_recharged is True


@pytest.mark.asyncio
async def test_reconcile_requires_paid_order(db, clock):
    order = await create_order(db, "user-1", 10, order_id="ord-unpaid")
    with pytest.raises(ReconciliationError):
        await _reconciliation(db, clock).reconcile(order)
    assert await _order_entries(db, "ord-unpaid") == []


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_produce_one_grant(session_maker, clock):
    locks = KeyedLock()
    async with session_maker() as setup:
        order = await create_order(setup, "user-1", 30, order_id="ord-race")
        order.status = OrderStatus.PAID.value
        await setup.commit()

    async def deliver():
        async with session_maker() as session:
            return await reconcile_order_by_id(session, _reconciliation(session, clock, locks), "ord-race")

    results = await asyncio.gather(deliver(), deliver(), deliver())

    assert results.count(True) == 1
    async with session_maker() as check:
        assert len(await _order_entries(check, "ord-race")) == 1


@pytest.mark.asyncio
async def test_handle_order_paid_marks_paid_and_is_idempotent(db, clock):
    await create_order(
        db,
        "user-1",
        25,
        order_id="ord-webhook",
        expires_at=clock() + timedelta(days=90),
    )
    reconciliation = _reconciliation(db, clock)

    first = await handle_order_paid(db, reconciliation, "ord-webhook", paid_email="buyer@example.com", clock=clock)
    second = await handle_order_paid(db, reconciliation, "ord-webhook", clock=clock)

    assert first["reconciled"] is True
    assert first["status"] == OrderStatus.PAID.value
    assert second["reconciled"] is False
    order = await get_order(db, "ord-webhook")
    assert order.paid_email == "buyer@example.com"

    entries = await _order_entries(db, "ord-webhook")
    assert len(entries) == 1
    balance = await BalanceCalculator(LedgerStore(db), clock=clock).get_balance("user-1")
    assert balance.bonus_credits == 25


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(db, clock):
    with pytest.raises(NotFoundError):
        await handle_order_paid(db, _reconciliation(db, clock), "missing", clock=clock)


async def _paid_order_beside_existing_entry(session_maker, clock, order_id, taken_id):
    async with session_maker() as setup:
        other = ConsumptionEngine(LedgerStore(setup), KeyedLock(), clock=clock, id_factory=lambda: taken_id)
        await other.grant("user-2", 5, LedgerKind.PERMANENT_GRANT)
        order = await create_order(setup, "user-1", 20, order_id=order_id)
        order.status = OrderStatus.PAID.value
        await setup.commit()


@pytest.mark.asyncio
async def test_transaction_id_collision_retries_with_fresh_id(session_maker, clock):
    await _paid_order_beside_existing_entry(session_maker, clock, "ord-collide", "0000000000000000100")
    ids = iter(["0000000000000000100", "0000000000000000101"])

    async with session_maker() as session:
        store = LedgerStore(session)
        engine = ConsumptionEngine(store, KeyedLock(), clock=clock, id_factory=lambda: next(ids))
        granted = await reconcile_order_by_id(session, OrderReconciliation(store, engine), "ord-collide")

        assert granted is True
        entries = await _order_entries(session, "ord-collide")
        assert [(entry.transaction_id, entry.amount) for entry in entries] == [("0000000000000000101", 20)]


@pytest.mark.asyncio
async def test_persistent_id_collision_surfaces_instead_of_dropping_grant(session_maker, clock):
    await _paid_order_beside_existing_entry(session_maker, clock, "ord-stuck", "0000000000000000200")

    async with session_maker() as session:
        store = LedgerStore(session)
        engine = ConsumptionEngine(store, KeyedLock(), clock=clock, id_factory=lambda: "0000000000000000200")
        with pytest.raises(StorageConflictError):
            await reconcile_order_by_id(session, OrderReconciliation(store, engine), "ord-stuck")

        assert await store.find_by_order_id("ord-stuck") is None
