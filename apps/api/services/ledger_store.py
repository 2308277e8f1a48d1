"""Ledger store: append-only persistence and queries for credit movements."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, exists, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from models.ledger_entry import LedgerEntry, LedgerKind
from models.user import User
from services.storage import storage_errors


class LedgerStore:
    """Storage primitive over ``ledger_entries``. No business rules live here."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Stage and flush one entry.

        Raises StorageConflictError when the transaction id or the related
        order id already exists, StorageUnavailableError on I/O failure.
        """
        async with storage_errors(self.db, "ledger append", key=entry.transaction_id):
            self.db.add(entry)
            await self.db.flush()
        return entry

    async def commit(self) -> None:
        async with storage_errors(self.db, "ledger commit"):
            await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def lock_user(self, user_id: str) -> None:
        """Take the per-user row lock for the current transaction (no-op on SQLite)."""
        async with storage_errors(self.db, "ledger lock"):
            await self.db.execute(select(User.id).where(User.id == user_id).with_for_update())

    async def find_by_order_id(self, order_id: str) -> Optional[LedgerEntry]:
        async with storage_errors(self.db, "ledger lookup"):
            result = await self.db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.related_order_id == order_id)
                .order_by(LedgerEntry.created_at.asc(), LedgerEntry.transaction_id.asc())
                .limit(1)
            )
            return result.scalars().first()

    async def list_valid(self, user_id: str, as_of: datetime) -> Sequence[LedgerEntry]:
        """Entries that have not expired at ``as_of``, oldest first.

        The ordering drives FIFO consumption; ties on created_at fall back to
        the time-ordered transaction id.
        """
        async with storage_errors(self.db, "ledger list"):
            result = await self.db.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.user_id == user_id,
                    or_(LedgerEntry.expires_at.is_(None), LedgerEntry.expires_at > as_of),
                )
                .order_by(LedgerEntry.created_at.asc(), LedgerEntry.transaction_id.asc())
            )
            return result.scalars().all()

    async def list_history(self, user_id: str, page: int = 1, limit: int = 50) -> List[LedgerEntry]:
        """All entries, valid or expired, newest first."""
        page = max(int(page), 1)
        limit = max(1, min(int(limit), 200))
        async with storage_errors(self.db, "ledger history"):
            result = await self.db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.created_at.desc(), LedgerEntry.transaction_id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            return list(result.scalars().all())

    async def list_for_user(self, user_id: str) -> List[LedgerEntry]:
        async with storage_errors(self.db, "ledger list"):
            result = await self.db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.created_at.asc(), LedgerEntry.transaction_id.asc())
            )
            return list(result.scalars().all())

    async def has_kind(self, user_id: str, kind: LedgerKind) -> bool:
        async with storage_errors(self.db, "ledger lookup"):
            result = await self.db.execute(
                select(LedgerEntry.transaction_id)
                .where(LedgerEntry.user_id == user_id, LedgerEntry.kind == kind.value)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def has_order_credit(self, user_id: str) -> bool:
        """True when at least one order produced a grant for this user."""
        async with storage_errors(self.db, "ledger lookup"):
            result = await self.db.execute(
                select(LedgerEntry.transaction_id)
                .where(
                    LedgerEntry.user_id == user_id,
                    LedgerEntry.related_order_id.is_not(None),
                    LedgerEntry.amount > 0,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def list_expired_bonus_pending(self, as_of: datetime, limit: int = 500) -> List[LedgerEntry]:
        """Bonus grants past their expiry that have no BonusExpiry offset yet."""
        offset = aliased(LedgerEntry)
        already_offset = exists().where(
            and_(
                offset.kind == LedgerKind.BONUS_EXPIRY.value,
                offset.source_transaction_id == LedgerEntry.transaction_id,
            )
        )
        async with storage_errors(self.db, "ledger sweep"):
            result = await self.db.execute(
                select(LedgerEntry)
                .where(
                    LedgerEntry.kind == LedgerKind.BONUS_GRANT.value,
                    LedgerEntry.expires_at.is_not(None),
                    LedgerEntry.expires_at <= as_of,
                    ~already_offset,
                )
                .order_by(LedgerEntry.expires_at.asc(), LedgerEntry.transaction_id.asc())
                .limit(max(int(limit), 1))
            )
            return list(result.scalars().all())
