"""SQL-backed generation history and usage audit sink."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import Generation
from models.subscription_usage import SubscriptionUsage
from services.storage import storage_errors
from services.timeutils import Clock, utc_now


class SqlGenerationHistory:
    def __init__(self, db: AsyncSession, *, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock

    async def count_generations(self, user_id: str, start: datetime, end: datetime) -> int:
        """Generations in ``[start, end)``."""
        async with storage_errors(self.db, "generation count"):
            result = await self.db.execute(
                select(func.count(Generation.id)).where(
                    Generation.user_id == user_id,
                    Generation.created_at >= start,
                    Generation.created_at < end,
                )
            )
            return int(result.scalar() or 0)

    async def record_generation(
        self,
        user_id: str,
        *,
        style: Optional[str] = None,
        quality: Optional[str] = None,
        batch_size: int = 1,
        generation_id: Optional[str] = None,
    ) -> Generation:
        generation = Generation(
            id=generation_id or str(uuid.uuid4()),
            user_id=user_id,
            style=style,
            quality=quality,
            batch_size=max(int(batch_size), 1),
            created_at=self.clock(),
        )
        async with storage_errors(self.db, "generation record", key=generation.id):
            self.db.add(generation)
            await self.db.commit()
        return generation


class SqlUsageRecorder:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

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
        row = SubscriptionUsage(
            id=str(uuid.uuid4()),
            user_id=user_id,
            subscription_id=subscription_id,
            usage_type=kind,
            model_used=model,
            prompt=(prompt or "")[:1000] or None,
            generation_id=generation_id,
            credits_consumed=int(credits_consumed or 0),
            count=1,
        )
        async with storage_errors(self.db, "usage record"):
            self.db.add(row)
            await self.db.commit()
