"""Plan catalogue and subscription lifecycle endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from exceptions import BillingError
from models.subscription import BillingInterval
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_internal_token
from routers.deps import ensure_user, get_subscription_manager, http_error
from services.plans import PlanId, purchasable_plans
from services.subscriptions import (
    SubscriptionLifecycleManager,
    serialize_subscription,
    subscription_status_view,
)

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    user_id: str
    plan_id: PlanId
    interval: BillingInterval = BillingInterval.MONTHLY
    payment_reference: Optional[str] = Field(default=None, max_length=255)


@router.get("/plans")
async def list_plans():
    return {"plans": [plan.to_dict() for plan in purchasable_plans()]}


@router.get("")
async def subscription_status(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        is_current = await subscriptions.is_active_and_current(scoped_user_id)
        subscription = await subscriptions.get_entitling(scoped_user_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return subscription_status_view(subscription, is_current=is_current)


@router.post("", dependencies=[Depends(require_internal_token)])
async def create_subscription(
    request: CreateSubscriptionRequest,
    db: AsyncSession = Depends(get_db),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    """Called by the payment flow once a plan purchase has cleared."""
    await ensure_user(db, request.user_id)
    try:
        subscription = await subscriptions.create(
            request.user_id,
            request.plan_id,
            request.interval,
            request.payment_reference,
        )
    except (BillingError, ValueError) as exc:
        raise http_error(exc) from exc
    return {"subscription": serialize_subscription(subscription)}


@router.delete("")
async def cancel_subscription(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        subscription = await subscriptions.cancel(scoped_user_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"subscription": serialize_subscription(subscription)}
