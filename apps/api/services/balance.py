"""Balance calculator derived from the ledger."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from models.ledger_entry import LedgerEntry
from services.ledger_store import LedgerStore
from services.timeutils import FAR_FUTURE, Clock, as_utc, utc_now


@dataclass(frozen=True)
class Balance:
    left_credits: int
    permanent_credits: int
    bonus_credits: int
    is_recharged: bool

    @property
    def is_pro(self) -> bool:
        # Crude signal: any credit at all. Unrelated to subscription tier.
        return self.left_credits > 0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["is_pro"] = self.is_pro
        return payload


def is_permanent(entry: LedgerEntry) -> bool:
    expires_at = as_utc(entry.expires_at)
    return expires_at is None or expires_at >= FAR_FUTURE


def summarize_entries(entries: Iterable[LedgerEntry]) -> Dict[str, int]:
    """Raw (unclamped) totals split into permanent and time-boxed partitions.

    A debit lands in the partition of the batch it was charged against,
    because it carries that batch's expiry.
    """
    total = 0
    permanent = 0
    bonus = 0
    for entry in entries:
        amount = int(entry.amount or 0)
        total += amount
        if is_permanent(entry):
            permanent += amount
        else:
            bonus += amount
    return {"total": total, "permanent": permanent, "bonus": bonus}


class BalanceCalculator:
    def __init__(self, store: LedgerStore, *, clock: Clock = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def get_balance(self, user_id: str, as_of: Optional[datetime] = None) -> Balance:
        now = as_of or self.clock()
        entries = await self.store.list_valid(user_id, now)
        totals = summarize_entries(entries)
        return Balance(
            # Floor at zero for display; historical anomalies must not surface as debt.
            left_credits=max(totals["total"], 0),
            permanent_credits=max(totals["permanent"], 0),
            bonus_credits=max(totals["bonus"], 0),
            is_recharged=await self.is_recharged(user_id),
        )

    async def get_raw_total(self, user_id: str, as_of: Optional[datetime] = None) -> int:
        entries = await self.store.list_valid(user_id, as_of or self.clock())
        return summarize_entries(entries)["total"]

    async def is_recharged(self, user_id: str) -> bool:
        return await self.store.has_order_credit(user_id)
