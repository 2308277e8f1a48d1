"""Subscription lifecycle: create, cancel, period resets and lazy expiry."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from exceptions import NotFoundError, StorageConflictError, SubscriptionConflictError
from models.subscription import BillingInterval, Subscription, SubscriptionStatus
from services.plans import PlanId, get_plan, recommended_upgrade
from services.storage import storage_errors
from services.timeutils import FAR_FUTURE, Clock, add_months, as_utc, utc_now


logger = logging.getLogger(__name__)


def period_end_for(start: datetime, interval: BillingInterval) -> datetime:
    interval = BillingInterval(interval)
    if interval == BillingInterval.MONTHLY:
        return add_months(start, 1)
    if interval == BillingInterval.YEARLY:
        return add_months(start, 12)
    return FAR_FUTURE


class SubscriptionLifecycleManager:
    """State machine: (none) -> active -> {cancelled, expired}. Rows are never revived."""

    def __init__(self, db: AsyncSession, *, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock

    async def get_active(self, user_id: str) -> Optional[Subscription]:
        async with storage_errors(self.db, "subscription lookup"):
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                )
            )
            return result.scalars().first()

    async def get_latest(self, user_id: str) -> Optional[Subscription]:
        async with storage_errors(self.db, "subscription lookup"):
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .order_by(Subscription.created_at.desc(), Subscription.current_period_start.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def get_entitling(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """The subscription that governs entitlements, if any.

        Active and paused rows count; a cancelled row keeps counting until its
        period ends. Expired rows never count.
        """
        now = now or self.clock()
        active = await self.get_active(user_id)
        if active is not None:
            return active
        latest = await self.get_latest(user_id)
        if latest is None:
            return None
        if latest.status == SubscriptionStatus.PAUSED.value:
            return latest
        if latest.status == SubscriptionStatus.CANCELLED.value and as_utc(latest.current_period_end) > now:
            return latest
        return None

    async def create(
        self,
        user_id: str,
        plan_id: PlanId,
        interval: BillingInterval,
        payment_ref: Optional[str] = None,
    ) -> Subscription:
        plan = get_plan(plan_id)
        if plan.plan_id == PlanId.FREE:
            raise ValueError("The free plan does not take a subscription")
        interval = BillingInterval(interval)
        if plan.is_one_time:
            interval = BillingInterval.ONE_TIME
        elif interval == BillingInterval.ONE_TIME:
            raise ValueError(f"{plan.plan_id.value} is billed monthly or yearly")

        if await self.get_active(user_id) is not None:
            raise SubscriptionConflictError(user_id)

        now = self.clock()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan_id=plan.plan_id.value,
            status=SubscriptionStatus.ACTIVE.value,
            interval=interval.value,
            current_period_start=now,
            current_period_end=period_end_for(now, interval),
            used_this_month=0,
            payment_reference=payment_ref,
            created_at=now,
        )
        try:
            async with storage_errors(self.db, "subscription create", key=user_id):
                self.db.add(subscription)
                await self.db.commit()
        except StorageConflictError as exc:
            # Lost a race against a concurrent create; the partial unique index caught it.
            raise SubscriptionConflictError(user_id) from exc
        logger.info("Created %s/%s subscription for user %s", plan.plan_id.value, interval.value, user_id)
        return subscription

    async def cancel(self, user_id: str) -> Subscription:
        """Mark the active subscription cancelled. Entitlements run to the period end."""
        subscription = await self.get_active(user_id)
        if subscription is None:
            raise NotFoundError("subscription", user_id)
        now = self.clock()
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now
        async with storage_errors(self.db, "subscription cancel"):
            await self.db.commit()
        logger.info("Cancelled subscription %s for user %s", subscription.id, user_id)
        return subscription

    async def increment_usage(self, subscription_id: str, count: int = 1) -> None:
        """Atomic ``used_this_month = used_this_month + count``."""
        async with storage_errors(self.db, "subscription usage"):
            await self.db.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id)
                .values(used_this_month=Subscription.used_this_month + int(count))
            )
            await self.db.commit()

    async def reset_expired_periods(self, now: Optional[datetime] = None) -> int:
        """Zero usage and advance the period of every active row whose period ended.

        Each row update re-checks ``current_period_end <= now``, so two runs with
        the same ``now`` advance a row once. One-time plans are never advanced.
        """
        now = now or self.clock()
        async with storage_errors(self.db, "subscription reset"):
            result = await self.db.execute(
                select(Subscription.id, Subscription.interval, Subscription.user_id, Subscription.plan_id).where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.interval != BillingInterval.ONE_TIME.value,
                    Subscription.current_period_end <= now,
                )
            )
            due = result.all()
            touched = 0
            for subscription_id, interval, user_id, plan_id in due:
                updated = await self.db.execute(
                    update(Subscription)
                    .where(
                        Subscription.id == subscription_id,
                        Subscription.status == SubscriptionStatus.ACTIVE.value,
                        Subscription.current_period_end <= now,
                    )
                    .values(
                        used_this_month=0,
                        current_period_start=now,
                        current_period_end=period_end_for(now, BillingInterval(interval)),
                    )
                    .execution_options(synchronize_session="fetch")
                )
                if updated.rowcount:
                    touched += 1
                    logger.info("Reset monthly usage for user %s on plan %s", user_id, plan_id)
            await self.db.commit()
        return touched

    async def is_active_and_current(self, user_id: str) -> bool:
        """True for an active row inside its period; an active row past its period expires here."""
        subscription = await self.get_active(user_id)
        if subscription is None:
            return False
        now = self.clock()
        if as_utc(subscription.current_period_end) > now:
            return True
        subscription.status = SubscriptionStatus.EXPIRED.value
        async with storage_errors(self.db, "subscription expire"):
            await self.db.commit()
        logger.info("Subscription %s for user %s expired at %s", subscription.id, user_id, subscription.current_period_end)
        return False

    async def count_active(self) -> int:
        async with storage_errors(self.db, "subscription stats"):
            result = await self.db.execute(
                select(func.count(Subscription.id)).where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            )
            return int(result.scalar() or 0)

    async def count_due_for_reset(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        async with storage_errors(self.db, "subscription stats"):
            result = await self.db.execute(
                select(func.count(Subscription.id)).where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.interval != BillingInterval.ONE_TIME.value,
                    Subscription.current_period_end <= now,
                )
            )
            return int(result.scalar() or 0)


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if subscription is None:
        return None
    period_start = as_utc(subscription.current_period_start)
    period_end = as_utc(subscription.current_period_end)
    cancelled_at = as_utc(subscription.cancelled_at)
    return {
        "id": subscription.id,
        "plan_id": subscription.plan_id,
        "status": subscription.status,
        "interval": subscription.interval,
        "current_period_start": period_start.isoformat() if period_start else None,
        "current_period_end": period_end.isoformat() if period_end else None,
        "used_this_month": int(subscription.used_this_month or 0),
        "cancelled_at": cancelled_at.isoformat() if cancelled_at else None,
    }


def subscription_status_view(subscription: Optional[Subscription], *, is_current: bool) -> Dict[str, Any]:
    plan_id = PlanId(subscription.plan_id) if subscription is not None else PlanId.FREE
    plan = get_plan(plan_id)
    used = int(subscription.used_this_month or 0) if subscription is not None else 0
    limit = plan.monthly_generation_limit
    usage_percentage = round(used / limit * 100) if limit else 0
    upgrade = recommended_upgrade(plan_id)
    return {
        "current_plan": {
            "plan_id": plan_id.value,
            "plan_name": plan.name,
            "is_active": is_current,
        },
        "subscription": serialize_subscription(subscription),
        "usage": {
            "used_this_month": used,
            "monthly_limit": limit,
            "usage_percentage": usage_percentage,
            "reset_date": serialize_subscription(subscription)["current_period_end"] if subscription else None,
        },
        "recommended_upgrade": get_plan(upgrade).to_dict() if upgrade else None,
    }
