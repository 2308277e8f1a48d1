"""Entitlement decisions per plan tier and best-effort usage recording."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from models.subscription import Subscription, SubscriptionStatus
from services.balance import BalanceCalculator
from services.plans import (
    PlanDefinition,
    PlanId,
    get_plan,
    recommended_upgrade,
    upgrade_for_batch_size,
    upgrade_for_quality,
)
from services.subscriptions import SubscriptionLifecycleManager
from services.timeutils import Clock, as_utc, day_window, utc_now


logger = logging.getLogger(__name__)


class GenerationHistory(Protocol):
    async def count_generations(self, user_id: str, start: datetime, end: datetime) -> int:
        ...


class UsageRecorder(Protocol):
    async def record_usage(
        self,
        user_id: str,
        subscription_id: str,
        kind: str,
        model: Optional[str],
        prompt: Optional[str],
        generation_id: Optional[str],
        credits_consumed: int,
    ) -> None:
        ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Allowed:
    plan_id: PlanId
    remaining: Optional[int]
    reset_at: Optional[datetime]
    subscription_id: Optional[str] = None

    allowed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": True,
            "plan_id": self.plan_id.value,
            "remaining": self.remaining,
            "reset_at": _iso(self.reset_at),
        }


@dataclass(frozen=True)
class Denied:
    plan_id: PlanId
    reason: str
    code: str
    reset_at: Optional[datetime] = None
    suggested_upgrade: Optional[PlanId] = None

    allowed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": False,
            "plan_id": self.plan_id.value,
            "reason": self.reason,
            "code": self.code,
            "reset_at": _iso(self.reset_at),
            "suggested_upgrade": self.suggested_upgrade.value if self.suggested_upgrade else None,
        }


class EntitlementEngine:
    """Answers "may this user generate now?" from plan, subscription and history.

    Storage and collaborators come in through the constructor; the engine keeps
    no state of its own between calls.
    """

    def __init__(
        self,
        subscriptions: SubscriptionLifecycleManager,
        history: GenerationHistory,
        recorder: UsageRecorder,
        *,
        balances: Optional[BalanceCalculator] = None,
        clock: Clock = utc_now,
        timezone_name: str = "UTC",
    ) -> None:
        self.subscriptions = subscriptions
        self.history = history
        self.recorder = recorder
        self.balances = balances
        self.clock = clock
        self.timezone_name = timezone_name

    async def can_generate(
        self,
        user_id: str,
        style: Optional[str] = None,
        quality: Optional[str] = None,
        batch_size: int = 1,
    ):
        now = self.clock()
        subscription = await self.subscriptions.get_entitling(user_id, now)
        if subscription is None:
            return await self._check_free(user_id, style, quality, batch_size, now)
        return self._check_metered(subscription, style, quality, batch_size)

    async def _check_free(
        self,
        user_id: str,
        style: Optional[str],
        quality: Optional[str],
        batch_size: int,
        now: datetime,
    ):
        plan = get_plan(PlanId.FREE)
        start, end = day_window(now, self.timezone_name)
        used_today = await self.history.count_generations(user_id, start, end)
        limit = plan.daily_generation_limit or 0
        if used_today >= limit:
            return Denied(
                plan_id=plan.plan_id,
                reason=f"Daily limit of {limit} generation(s) reached",
                code="daily_limit_reached",
                reset_at=end,
                suggested_upgrade=PlanId.TRIAL,
            )
        if not plan.allows_style(style):
            return Denied(
                plan_id=plan.plan_id,
                reason=f"Style '{style}' is not available on the {plan.name} plan",
                code="style_not_allowed",
                suggested_upgrade=PlanId.TRIAL,
            )
        denied = self._check_shape(plan, quality, batch_size)
        if denied is not None:
            return denied
        return Allowed(plan_id=plan.plan_id, remaining=limit - used_today, reset_at=end)

    def _check_metered(
        self,
        subscription: Subscription,
        style: Optional[str],
        quality: Optional[str],
        batch_size: int,
    ):
        plan = get_plan(subscription.plan_id)
        period_end = as_utc(subscription.current_period_end)
        if subscription.status == SubscriptionStatus.PAUSED.value:
            return Denied(
                plan_id=plan.plan_id,
                reason="Subscription required",
                code="subscription_required",
                suggested_upgrade=plan.plan_id,
            )

        remaining = None
        limit = plan.monthly_generation_limit
        if limit is not None:
            used = int(subscription.used_this_month or 0)
            if used >= limit:
                return Denied(
                    plan_id=plan.plan_id,
                    reason=f"Monthly limit of {limit} generations reached",
                    code="monthly_limit_reached",
                    reset_at=period_end,
                    suggested_upgrade=recommended_upgrade(plan.plan_id),
                )
            remaining = limit - used

        if not plan.allows_style(style):
            return Denied(
                plan_id=plan.plan_id,
                reason=f"Style '{style}' is not available on the {plan.name} plan",
                code="style_not_allowed",
                suggested_upgrade=recommended_upgrade(plan.plan_id),
            )
        denied = self._check_shape(plan, quality, batch_size)
        if denied is not None:
            return denied
        return Allowed(
            plan_id=plan.plan_id,
            remaining=remaining,
            reset_at=period_end,
            subscription_id=subscription.id,
        )

    def _check_shape(self, plan: PlanDefinition, quality: Optional[str], batch_size: int) -> Optional[Denied]:
        if not plan.allows_quality(quality):
            return Denied(
                plan_id=plan.plan_id,
                reason=f"Quality '{quality}' is not available on the {plan.name} plan",
                code="quality_not_allowed",
                suggested_upgrade=upgrade_for_quality(quality),
            )
        if int(batch_size or 1) > plan.max_batch_size:
            return Denied(
                plan_id=plan.plan_id,
                reason=f"Batch size {batch_size} exceeds the {plan.name} limit of {plan.max_batch_size}",
                code="batch_size_exceeded",
                suggested_upgrade=upgrade_for_batch_size(int(batch_size)),
            )
        return None

    async def record_usage(
        self,
        user_id: str,
        generation_id: Optional[str],
        credits_used: int,
        style: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> bool:
        """Append a usage row and bump ``used_this_month``.

        Free users are counted from generation history, so nothing is written
        for them. Failures are logged and reported as False, never raised.
        """
        try:
            subscription = await self.subscriptions.get_entitling(user_id, self.clock())
            if subscription is None:
                return False
            await self.recorder.record_usage(
                user_id,
                subscription.id,
                "generation",
                style,
                prompt,
                generation_id,
                int(credits_used or 0),
            )
            await self.subscriptions.increment_usage(subscription.id)
            return True
        except Exception:
            logger.exception("Failed to record usage for user %s generation %s", user_id, generation_id)
            return False

    async def summarize(self, user_id: str) -> Dict[str, Any]:
        """Subscription allowance left this period plus ledger partitions."""
        now = self.clock()
        subscription = await self.subscriptions.get_entitling(user_id, now)
        if subscription is None:
            plan = get_plan(PlanId.FREE)
            start, end = day_window(now, self.timezone_name)
            used_today = await self.history.count_generations(user_id, start, end)
            subscription_credits = max((plan.daily_generation_limit or 0) - used_today, 0)
            next_reset = end
        else:
            plan = get_plan(subscription.plan_id)
            limit = plan.monthly_generation_limit
            used = int(subscription.used_this_month or 0)
            subscription_credits = max(limit - used, 0) if limit is not None else None
            next_reset = as_utc(subscription.current_period_end)

        permanent = 0
        bonus = 0
        if self.balances is not None:
            balance = await self.balances.get_balance(user_id, now)
            permanent = balance.permanent_credits
            bonus = balance.bonus_credits

        total = None if subscription_credits is None else subscription_credits + permanent + bonus
        return {
            "plan_id": plan.plan_id.value,
            "plan_name": plan.name,
            "subscription_credits": subscription_credits,
            "permanent_credits": permanent,
            "bonus_credits": bonus,
            "total_available": total,
            "next_reset_date": _iso(next_reset),
        }
