"""Scheduler and operator endpoints, gated by the internal token."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from exceptions import BillingError
from routers.auth_scope import require_internal_token
from routers.deps import (
    ensure_user,
    get_clock,
    get_consumption_engine,
    get_monthly_reset_job,
    get_reconciliation,
    get_subscription_manager,
    http_error,
)
from services.credits import ConsumptionEngine
from services.monthly_reset import MonthlyResetJob
from services.reconciliation import (
    OrderReconciliation,
    create_order,
    get_order,
    reconcile_order_by_id,
    serialize_order,
)
from services.subscriptions import SubscriptionLifecycleManager
from services.timeutils import Clock

router = APIRouter(dependencies=[Depends(require_internal_token)])
logger = logging.getLogger(__name__)


class CreateOrderRequest(BaseModel):
    user_id: str
    credits: int = Field(ge=1, le=1000000)
    amount_cents: int = Field(default=0, ge=0)
    currency: Optional[str] = Field(default=None, max_length=8)
    expires_at: Optional[datetime] = None
    order_id: Optional[str] = Field(default=None, max_length=128)


@router.post("/monthly-reset")
async def run_monthly_reset(job: MonthlyResetJob = Depends(get_monthly_reset_job)):
    """Safe to call repeatedly; only the first call in a calendar month does work."""
    try:
        return await job.run()
    except BillingError as exc:
        raise http_error(exc) from exc


@router.get("/monthly-reset")
async def monthly_reset_status(job: MonthlyResetJob = Depends(get_monthly_reset_job)):
    try:
        return await job.status()
    except BillingError as exc:
        raise http_error(exc) from exc


@router.post("/subscription-reset")
async def reset_subscription_periods(
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
    clock: Clock = Depends(get_clock),
):
    """Unguarded period reset for operators; the scheduler uses /monthly-reset."""
    try:
        touched = await subscriptions.reset_expired_periods(clock())
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"subscriptions_reset": touched}


@router.post("/bonus-expiry")
async def run_bonus_expiry(engine: ConsumptionEngine = Depends(get_consumption_engine)):
    try:
        expired = await engine.expire_bonus_grants()
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"bonus_entries_expired": expired}


@router.post("/orders")
async def create_credit_order(request: CreateOrderRequest, db: AsyncSession = Depends(get_db)):
    await ensure_user(db, request.user_id)
    try:
        order = await create_order(
            db,
            request.user_id,
            request.credits,
            amount_cents=request.amount_cents,
            currency=request.currency,
            expires_at=request.expires_at,
            order_id=request.order_id,
        )
    except (BillingError, ValueError) as exc:
        raise http_error(exc) from exc
    return serialize_order(order)


@router.get("/orders/{order_id}")
async def get_credit_order(order_id: str, db: AsyncSession = Depends(get_db)):
    try:
        order = await get_order(db, order_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return serialize_order(order)


@router.post("/order-reconcile/{order_id}")
async def reconcile_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    reconciliation: OrderReconciliation = Depends(get_reconciliation),
):
    try:
        granted = await reconcile_order_by_id(db, reconciliation, order_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"order_id": order_id, "reconciled": granted}
