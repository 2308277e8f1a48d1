"""Monthly reset job guarded by a per-month marker row."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from exceptions import StorageConflictError
from models.system_config import SystemConfig
from services.credits import ConsumptionEngine
from services.storage import storage_errors
from services.subscriptions import SubscriptionLifecycleManager
from services.timeutils import Clock, month_key, next_month_start, utc_now


logger = logging.getLogger(__name__)

MARKER_PREFIX = "monthly_reset:"
LAST_RUN_KEY = "monthly_reset:last_run"


def marker_key(now: datetime) -> str:
    return f"{MARKER_PREFIX}{month_key(now)}"


class MonthlyResetJob:
    """Runs the subscription period reset and the bonus-expiry sweep at most once per calendar month.

    The marker row is inserted before any period advances; a second run in the
    same month hits the primary key and is skipped.
    """

    def __init__(
        self,
        db: AsyncSession,
        subscriptions: SubscriptionLifecycleManager,
        engine: ConsumptionEngine,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.subscriptions = subscriptions
        self.engine = engine
        self.clock = clock

    async def _get_config(self, key: str) -> Optional[SystemConfig]:
        async with storage_errors(self.db, "system config lookup", key=key):
            result = await self.db.execute(select(SystemConfig).where(SystemConfig.config_key == key))
            return result.scalar_one_or_none()

    async def _claim_month(self, now: datetime) -> bool:
        key = marker_key(now)
        try:
            async with storage_errors(self.db, "monthly reset marker", key=key):
                self.db.add(
                    SystemConfig(
                        config_key=key,
                        config_value=now.isoformat(),
                        description="Monthly reset executed",
                    )
                )
                await self.db.commit()
        except StorageConflictError:
            return False
        return True

    async def _write_last_run(self, payload: Dict[str, Any]) -> None:
        value = json.dumps(payload)
        row = await self._get_config(LAST_RUN_KEY)
        async with storage_errors(self.db, "monthly reset log", key=LAST_RUN_KEY):
            if row is None:
                self.db.add(
                    SystemConfig(
                        config_key=LAST_RUN_KEY,
                        config_value=value,
                        description="Last monthly reset execution",
                    )
                )
            else:
                row.config_value = value
            await self.db.commit()

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        task_id = f"monthly_reset_{int(now.timestamp() * 1000)}"
        next_run = next_month_start(now).isoformat()

        if not await self._claim_month(now):
            logger.info("Monthly reset for %s already executed; skipping", month_key(now))
            return {
                "task_id": task_id,
                "executed_at": now.isoformat(),
                "success": True,
                "skipped": True,
                "results": {"subscriptions_reset": 0, "bonus_entries_expired": 0, "errors": []},
                "next_scheduled_run": next_run,
            }

        errors = []
        subscriptions_reset = 0
        bonus_expired = 0
        try:
            subscriptions_reset = await self.subscriptions.reset_expired_periods(now)
        except Exception as exc:
            logger.exception("Subscription reset failed")
            errors.append(f"subscription reset: {exc}")
        try:
            bonus_expired = await self.engine.expire_bonus_grants(now)
        except Exception as exc:
            logger.exception("Bonus expiry sweep failed")
            errors.append(f"bonus expiry: {exc}")

        payload = {
            "task_id": task_id,
            "executed_at": now.isoformat(),
            "success": not errors,
            "skipped": False,
            "results": {
                "subscriptions_reset": subscriptions_reset,
                "bonus_entries_expired": bonus_expired,
                "errors": errors,
            },
            "next_scheduled_run": next_run,
        }
        await self._write_last_run(payload)
        logger.info(
            "Monthly reset %s: %s subscriptions reset, %s bonus grants expired, %s errors",
            month_key(now),
            subscriptions_reset,
            bonus_expired,
            len(errors),
        )
        return payload

    async def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        last_run = await self._get_config(LAST_RUN_KEY)
        marker = await self._get_config(marker_key(now))
        return {
            "last_execution": json.loads(last_run.config_value) if last_run and last_run.config_value else None,
            "active_subscriptions": await self.subscriptions.count_active(),
            "subscriptions_needing_reset": await self.subscriptions.count_due_for_reset(now),
            "should_run_now": marker is None,
            "current_month": month_key(now),
            "next_scheduled_run": next_month_start(now).isoformat(),
        }
