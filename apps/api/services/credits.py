"""Credit consumption and grants against the ledger."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from exceptions import InsufficientCreditsError, StorageConflictError
from models.ledger_entry import CREDIT_KINDS, LedgerEntry, LedgerKind
from services.ids import new_transaction_id
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.storage import with_timeout
from services.timeutils import Clock, as_utc, utc_now


logger = logging.getLogger(__name__)


def find_debit_anchor(entries: Sequence[LedgerEntry], amount: int) -> Optional[LedgerEntry]:
    """Walk oldest-first and return the entry at which the running total reaches ``amount``."""
    running = 0
    for entry in entries:
        running += int(entry.amount or 0)
        if running >= amount:
            return entry
    return None


class ConsumptionEngine:
    """Debits and grants. Every write for a user runs under that user's lock."""

    def __init__(
        self,
        store: LedgerStore,
        locks: KeyedLock,
        *,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = new_transaction_id,
        default_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.clock = clock
        self.id_factory = id_factory
        self.default_timeout = default_timeout

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.default_timeout if timeout is None else timeout

    async def consume(
        self,
        user_id: str,
        amount: int,
        reason: str,
        *,
        allow_overdraft: bool = False,
        timeout: Optional[float] = None,
    ) -> LedgerEntry:
        """Write one Consumption entry of ``-amount``.

        Rejects with InsufficientCreditsError (writing nothing) when the valid
        balance is short, unless ``allow_overdraft`` is set.
        """
        if int(amount) <= 0:
            raise ValueError("amount must be greater than 0")
        return await with_timeout(
            self._consume(user_id, int(amount), reason, allow_overdraft),
            self._timeout(timeout),
            "consume",
        )

    async def _consume(self, user_id: str, amount: int, reason: str, allow_overdraft: bool) -> LedgerEntry:
        async with self.locks.hold(user_id):
            await self.store.lock_user(user_id)
            now = self.clock()
            entries = await self.store.list_valid(user_id, now)
            available = sum(int(entry.amount or 0) for entry in entries)

            anchor = None
            if available >= amount:
                anchor = find_debit_anchor(entries, amount)
            elif not allow_overdraft:
                await self.store.rollback()
                raise InsufficientCreditsError(required=amount, available=max(available, 0))
            else:
                logger.warning(
                    "Overdraft debit for user %s: amount=%s available=%s reason=%s",
                    user_id,
                    amount,
                    available,
                    reason,
                )

            debit = LedgerEntry(
                transaction_id=self.id_factory(),
                user_id=user_id,
                kind=LedgerKind.CONSUMPTION.value,
                amount=-amount,
                created_at=now,
                expires_at=as_utc(anchor.expires_at) if anchor else None,
                source_transaction_id=anchor.transaction_id if anchor else None,
                source_order_id=(anchor.related_order_id or anchor.source_order_id) if anchor else None,
                reason=reason,
            )
            await self.store.append(debit)
            await self.store.commit()
            return debit

    async def grant(
        self,
        user_id: str,
        amount: int,
        kind: LedgerKind,
        expires_at: Optional[datetime] = None,
        related_order_id: Optional[str] = None,
        *,
        reason: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LedgerEntry:
        """Write one positive entry. ``expires_at=None`` never expires."""
        kind = LedgerKind(kind)
        if kind not in CREDIT_KINDS:
            raise ValueError(f"{kind.value} is not a credit kind")
        if int(amount) <= 0:
            raise ValueError("amount must be greater than 0")
        return await with_timeout(
            self._grant(user_id, int(amount), kind, expires_at, related_order_id, reason),
            self._timeout(timeout),
            "grant",
        )

    async def _grant(
        self,
        user_id: str,
        amount: int,
        kind: LedgerKind,
        expires_at: Optional[datetime],
        related_order_id: Optional[str],
        reason: Optional[str],
    ) -> LedgerEntry:
        async with self.locks.hold(user_id):
            await self.store.lock_user(user_id)
            entry = LedgerEntry(
                transaction_id=self.id_factory(),
                user_id=user_id,
                kind=kind.value,
                amount=amount,
                created_at=self.clock(),
                expires_at=as_utc(expires_at),
                related_order_id=related_order_id,
                reason=reason,
            )
            await self.store.append(entry)
            await self.store.commit()
            return entry

    async def grant_new_user_bonus(self, user_id: str, amount: int) -> Optional[LedgerEntry]:
        """Issue the sign-up grant once; later calls return None."""
        if int(amount) <= 0:
            return None
        async with self.locks.hold(user_id):
            await self.store.lock_user(user_id)
            if await self.store.has_kind(user_id, LedgerKind.NEW_USER_GRANT):
                await self.store.rollback()
                return None
            entry = LedgerEntry(
                transaction_id=self.id_factory(),
                user_id=user_id,
                kind=LedgerKind.NEW_USER_GRANT.value,
                amount=int(amount),
                created_at=self.clock(),
                reason="New user bonus",
            )
            await self.store.append(entry)
            await self.store.commit()
            return entry

    async def expire_bonus_grants(self, as_of: Optional[datetime] = None) -> int:
        """Offset every expired BonusGrant with exactly one BonusExpiry entry.

        The offset keeps the grant's expiry so it never touches the valid
        balance; it only zeroes the grant in the full history.
        """
        now = as_of or self.clock()
        due: List[LedgerEntry] = await self.store.list_expired_bonus_pending(now)
        # Snapshot first: a rollback on conflict expires every loaded row.
        pending = [
            (grant.transaction_id, grant.user_id, int(grant.amount), as_utc(grant.expires_at), grant.related_order_id)
            for grant in due
        ]
        expired = 0
        for transaction_id, user_id, amount, expires_at, order_id in pending:
            async with self.locks.hold(user_id):
                offset = LedgerEntry(
                    transaction_id=self.id_factory(),
                    user_id=user_id,
                    kind=LedgerKind.BONUS_EXPIRY.value,
                    amount=-amount,
                    created_at=now,
                    expires_at=expires_at,
                    source_transaction_id=transaction_id,
                    source_order_id=order_id,
                    reason="Bonus credits expired",
                )
                try:
                    await self.store.append(offset)
                    await self.store.commit()
                except StorageConflictError:
                    logger.info("Bonus grant %s already offset by a concurrent sweep", transaction_id)
                    continue
                expired += 1
        if expired:
            logger.info("Expired %s bonus grants as of %s", expired, now.isoformat())
        return expired
