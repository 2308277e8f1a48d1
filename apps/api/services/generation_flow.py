"""Generation request flow: entitlement check and debit before, history and usage after."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from services.credits import ConsumptionEngine
from services.entitlements import EntitlementEngine
from services.usage import SqlGenerationHistory


logger = logging.getLogger(__name__)


class GenerationGate:
    """Sequences the billing steps around one generation.

    ``authorize`` runs before the provider call and may debit credits;
    ``complete`` runs after a successful generation and never fails it.
    """

    def __init__(
        self,
        entitlements: EntitlementEngine,
        engine: ConsumptionEngine,
        history: SqlGenerationHistory,
        *,
        credit_cost: int = 1,
    ) -> None:
        self.entitlements = entitlements
        self.engine = engine
        self.history = history
        self.credit_cost = max(int(credit_cost), 0)

    async def authorize(
        self,
        user_id: str,
        *,
        style: Optional[str] = None,
        quality: Optional[str] = None,
        batch_size: int = 1,
        charge_credits: bool = False,
    ) -> Dict[str, Any]:
        """Check entitlements, then debit ``credit_cost * batch_size`` when asked to.

        Raises InsufficientCreditsError when the debit cannot be covered.
        """
        decision = await self.entitlements.can_generate(user_id, style, quality, batch_size)
        payload: Dict[str, Any] = {"decision": decision.to_dict(), "charged": 0, "transaction_id": None}
        if not decision.allowed:
            return payload

        cost = self.credit_cost * max(int(batch_size), 1)
        if charge_credits and cost > 0:
            debit = await self.engine.consume(user_id, cost, reason=f"Generation x{max(int(batch_size), 1)}")
            payload["charged"] = cost
            payload["transaction_id"] = debit.transaction_id
        return payload

    async def complete(
        self,
        user_id: str,
        *,
        style: Optional[str] = None,
        quality: Optional[str] = None,
        batch_size: int = 1,
        prompt: Optional[str] = None,
        generation_id: Optional[str] = None,
        credits_used: int = 0,
    ) -> Dict[str, Any]:
        generation = await self.history.record_generation(
            user_id,
            style=style,
            quality=quality,
            batch_size=batch_size,
            generation_id=generation_id,
        )
        usage_recorded = await self.entitlements.record_usage(
            user_id,
            generation.id,
            credits_used,
            style=style,
            prompt=prompt,
        )
        if not usage_recorded:
            logger.debug("No subscription usage recorded for generation %s", generation.id)
        return {"generation_id": generation.id, "usage_recorded": usage_recorded}
