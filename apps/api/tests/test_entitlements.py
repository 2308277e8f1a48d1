from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from models.ledger_entry import LedgerKind
from models.subscription import BillingInterval, SubscriptionStatus
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine
from services.entitlements import Allowed, Denied, EntitlementEngine
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.plans import PlanId
from services.subscriptions import SubscriptionLifecycleManager
from services.usage import SqlGenerationHistory, SqlUsageRecorder


def _build(db, clock, recorder=None, timezone_name="UTC"):
    subscriptions = SubscriptionLifecycleManager(db, clock=clock)
    history = SqlGenerationHistory(db, clock=clock)
    engine = EntitlementEngine(
        subscriptions,
        history,
        recorder or SqlUsageRecorder(db),
        balances=BalanceCalculator(LedgerStore(db), clock=clock),
        clock=clock,
        timezone_name=timezone_name,
    )
    return engine, subscriptions, history


@pytest.mark.asyncio
async def test_free_tier_daily_limit_resets_next_day(db, clock):
    engine, _, history = _build(db, clock)
    start = clock()

    first = await engine.can_generate("user-1", style="anime")
    assert isinstance(first, Allowed)
    assert first.remaining == 1
    await history.record_generation("user-1", style="anime")

    clock.now = start + timedelta(hours=1)
    same_day = await engine.can_generate("user-1", style="anime")
    assert isinstance(same_day, Denied)
    assert same_day.code == "daily_limit_reached"
    assert same_day.suggested_upgrade == PlanId.TRIAL
    assert same_day.reset_at == datetime(2026, 3, 11, tzinfo=timezone.utc)

    clock.now = start + timedelta(hours=25)
    next_day = await engine.can_generate("user-1", style="anime")
    assert isinstance(next_day, Allowed)
    assert next_day.remaining == 1


@pytest.mark.asyncio
async def test_free_tier_day_window_follows_reference_timezone(db, clock):
    # 10:00 UTC is 19:00 in Tokyo; the next Tokyo day starts at 15:00 UTC.
    engine, _, history = _build(db, clock, timezone_name="Asia/Tokyo")
    await history.record_generation("user-1")

    denied = await engine.can_generate("user-1")
    assert isinstance(denied, Denied)
    assert denied.reset_at == datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

    clock.now = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)
    assert isinstance(await engine.can_generate("user-1"), Allowed)


@pytest.mark.asyncio
async def test_free_tier_rejects_premium_style_quality_and_batch(db, clock):
    engine, _, _ = _build(db, clock)

    style = await engine.can_generate("user-1", style="cyberpunk")
    assert style.code == "style_not_allowed"
    assert style.suggested_upgrade == PlanId.TRIAL

    quality = await engine.can_generate("user-1", quality="uhd")
    assert quality.code == "quality_not_allowed"
    assert quality.suggested_upgrade == PlanId.PRO

    batch = await engine.can_generate("user-1", batch_size=3)
    assert batch.code == "batch_size_exceeded"
    assert batch.suggested_upgrade == PlanId.PRO


@pytest.mark.asyncio
async def test_pro_monthly_boundary_suggests_ultra(db, clock):
    engine, subscriptions, _ = _build(db, clock)
    subscription = await subscriptions.create("user-1", PlanId.PRO, BillingInterval.MONTHLY)
    subscription.used_this_month = 49
    await db.commit()

    allowed = await engine.can_generate("user-1", style="cyberpunk", quality="uhd")
    assert isinstance(allowed, Allowed)
    assert allowed.remaining == 1
    assert allowed.subscription_id == subscription.id

    assert await engine.record_usage("user-1", "gen-50", 1, style="cyberpunk") is True

    denied = await engine.can_generate("user-1")
    assert isinstance(denied, Denied)
    assert denied.code == "monthly_limit_reached"
    assert denied.suggested_upgrade == PlanId.ULTRA
    assert denied.reset_at == subscription.current_period_end


@pytest.mark.asyncio
async def test_ultra_at_limit_has_no_further_upgrade(db, clock):
    engine, subscriptions, _ = _build(db, clock)
    subscription = await subscriptions.create("user-1", PlanId.ULTRA, BillingInterval.MONTHLY)
    subscription.used_this_month = 200
    await db.commit()

    denied = await engine.can_generate("user-1")
    assert isinstance(denied, Denied)
    assert denied.suggested_upgrade is None


@pytest.mark.asyncio
async def test_metered_quality_and_batch_checks(db, clock):
    engine, subscriptions, _ = _build(db, clock)
    await subscriptions.create("user-1", PlanId.PRO, BillingInterval.MONTHLY)

    quality = await engine.can_generate("user-1", quality="8k")
    assert quality.code == "quality_not_allowed"
    assert quality.suggested_upgrade == PlanId.ULTRA

    batch = await engine.can_generate("user-1", batch_size=6)
    assert batch.code == "batch_size_exceeded"
    assert batch.suggested_upgrade == PlanId.ULTRA

    assert isinstance(await engine.can_generate("user-1", batch_size=4), Allowed)


@pytest.mark.asyncio
async def test_paused_subscription_requires_subscription(db, clock):
    engine, subscriptions, _ = _build(db, clock)
    subscription = await subscriptions.create("user-1", PlanId.PRO, BillingInterval.MONTHLY)
    subscription.status = SubscriptionStatus.PAUSED.value
    await db.commit()

    denied = await engine.can_generate("user-1")
    assert isinstance(denied, Denied)
    assert denied.code == "subscription_required"


@pytest.mark.asyncio
async def test_record_usage_is_noop_for_free_users(db, clock):
    recorder = AsyncMock()
    engine, _, _ = _build(db, clock, recorder=recorder)

    assert await engine.record_usage("user-1", "gen-1", 0) is False
    recorder.record_usage.assert_not_awaited()


@pytest.mark.asyncio
async def test_record_usage_failure_is_swallowed(db, clock):
    recorder = AsyncMock()
    recorder.record_usage.side_effect = RuntimeError("audit sink down")
    engine, subscriptions, _ = _build(db, clock, recorder=recorder)
    subscription = await subscriptions.create("user-1", PlanId.PRO, BillingInterval.MONTHLY)

    assert await engine.record_usage("user-1", "gen-1", 1) is False
    assert subscription.used_this_month == 0


@pytest.mark.asyncio
async def test_summary_combines_allowance_and_ledger_partitions(db, clock):
    engine, subscriptions, _ = _build(db, clock)
    ledger = ConsumptionEngine(LedgerStore(db), KeyedLock(), clock=clock)
    await ledger.grant("user-1", 12, LedgerKind.PERMANENT_GRANT)
    await ledger.grant("user-1", 4, LedgerKind.BONUS_GRANT, expires_at=clock() + timedelta(days=7))
    subscription = await subscriptions.create("user-1", PlanId.PRO, BillingInterval.MONTHLY)
    subscription.used_this_month = 10
    await db.commit()

    summary = await engine.summarize("user-1")

    assert summary["plan_id"] == "pro"
    assert summary["subscription_credits"] == 40
    assert summary["permanent_credits"] == 12
    assert summary["bonus_credits"] == 4
    assert summary["total_available"] == 56
