"""Order reconciliation: turn a paid order into exactly one ledger grant."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from exceptions import NotFoundError, ReconciliationError, StorageConflictError
from models.ledger_entry import LedgerKind
from models.order import Order, OrderStatus
from services.credits import ConsumptionEngine
from services.ledger_store import LedgerStore
from services.storage import storage_errors
from services.timeutils import Clock, as_utc, utc_now


logger = logging.getLogger(__name__)

GRANT_ATTEMPTS = 3


class OrderReconciliation:
    """Idempotent bridge from payment webhooks to the ledger.

    The existence check is the fast path; the unique ``related_order_id``
    constraint is the guard against concurrent duplicate deliveries.
    """

    def __init__(self, store: LedgerStore, engine: ConsumptionEngine) -> None:
        self.store = store
        self.engine = engine

    async def reconcile(self, order: Order, *, timeout: Optional[float] = None) -> bool:
        """Grant the order's credits once. Returns False when nothing was written."""
        # Plain values only: a conflict rolls the session back and expires the row.
        order_id = order.order_id
        user_id = order.user_id
        credits = int(order.credits_granted or 0)
        expires_at = as_utc(order.expires_at)
        if order.status != OrderStatus.PAID.value:
            raise ReconciliationError(f"Order {order_id} is not paid (status={order.status})")
        if credits <= 0:
            logger.warning("Order %s carries no credits; nothing to reconcile", order_id)
            return False

        if await self.store.find_by_order_id(order_id) is not None:
            logger.info("Order %s already reconciled", order_id)
            return False

        for attempt in range(1, GRANT_ATTEMPTS + 1):
            try:
                await self.engine.grant(
                    user_id,
                    credits,
                    LedgerKind.ORDER_PAYMENT,
                    expires_at=expires_at,
                    related_order_id=order_id,
                    reason=f"Order {order_id}",
                    timeout=timeout,
                )
                break
            except StorageConflictError:
                if await self.store.find_by_order_id(order_id) is not None:
                    logger.info("Order %s reconciled by a concurrent delivery", order_id)
                    return False
                # Transaction id collision; the next attempt draws a fresh id.
                logger.warning("Ledger conflict reconciling order %s (attempt %s)", order_id, attempt)
                if attempt == GRANT_ATTEMPTS:
                    raise
        logger.info("Reconciled order %s: %s credits to user %s", order_id, credits, user_id)
        return True


async def get_order(db: AsyncSession, order_id: str) -> Order:
    async with storage_errors(db, "order lookup", key=order_id):
        result = await db.execute(select(Order).where(Order.order_id == order_id))
        order = result.scalar_one_or_none()
    if order is None:
        raise NotFoundError("order", order_id)
    return order


async def create_order(
    db: AsyncSession,
    user_id: str,
    credits: int,
    *,
    amount_cents: int = 0,
    currency: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    order_id: Optional[str] = None,
) -> Order:
    if int(credits) <= 0:
        raise ValueError("credits must be greater than 0")
    order = Order(
        order_id=order_id or f"ord_{uuid.uuid4().hex}",
        user_id=user_id,
        credits_granted=int(credits),
        status=OrderStatus.CREATED.value,
        expires_at=as_utc(expires_at),
        amount_cents=int(amount_cents or 0),
        currency=currency,
    )
    async with storage_errors(db, "order create", key=order.order_id):
        db.add(order)
        await db.commit()
    return order


async def mark_order_paid(
    db: AsyncSession,
    order_id: str,
    *,
    paid_email: Optional[str] = None,
    paid_detail: Optional[Dict[str, Any]] = None,
    clock: Clock = utc_now,
) -> Order:
    """Created -> Paid. An order that is already paid is returned untouched."""
    order = await get_order(db, order_id)
    if order.status == OrderStatus.PAID.value:
        return order
    order.status = OrderStatus.PAID.value
    order.paid_at = clock()
    order.paid_email = paid_email
    order.paid_detail = json.dumps(paid_detail, default=str) if paid_detail else None
    async with storage_errors(db, "order paid", key=order_id):
        await db.commit()
    logger.info("Order %s marked paid", order_id)
    return order


async def handle_order_paid(
    db: AsyncSession,
    reconciliation: OrderReconciliation,
    order_id: str,
    *,
    paid_email: Optional[str] = None,
    paid_detail: Optional[Dict[str, Any]] = None,
    clock: Clock = utc_now,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Mark a created order paid, then reconcile it.

    Redelivery for an order that is already paid only re-runs the idempotent
    reconcile, so a grant lost to a crash between the two steps is recovered.
    """
    order = await mark_order_paid(db, order_id, paid_email=paid_email, paid_detail=paid_detail, clock=clock)
    payload = serialize_order(order)
    payload["reconciled"] = await reconciliation.reconcile(order, timeout=timeout)
    return payload


async def reconcile_order_by_id(
    db: AsyncSession,
    reconciliation: OrderReconciliation,
    order_id: str,
    *,
    timeout: Optional[float] = None,
) -> bool:
    order = await get_order(db, order_id)
    return await reconciliation.reconcile(order, timeout=timeout)


def serialize_order(order: Order) -> Dict[str, Any]:
    expires_at = as_utc(order.expires_at)
    paid_at = as_utc(order.paid_at)
    return {
        "order_id": order.order_id,
        "user_id": order.user_id,
        "status": order.status,
        "credits_granted": int(order.credits_granted or 0),
        "amount_cents": int(order.amount_cents or 0),
        "currency": order.currency,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "paid_at": paid_at.isoformat() if paid_at else None,
    }
