"""Error translation and timeouts around database work."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import OperationTimeoutError, StorageConflictError, StorageUnavailableError


T = TypeVar("T")


@asynccontextmanager
async def storage_errors(db: AsyncSession, operation: str, key: Optional[str] = None) -> AsyncIterator[None]:
    """Map SQLAlchemy failures onto the StorageError taxonomy.

    A conflict rolls the session back so the caller can keep using it.
    """
    try:
        yield
    except IntegrityError as exc:
        await db.rollback()
        raise StorageConflictError(f"{operation}: duplicate key", key=key) from exc
    except (OperationalError, DBAPIError, OSError) as exc:
        raise StorageUnavailableError(f"{operation}: storage unavailable ({exc.__class__.__name__})") from exc


async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float], operation: str) -> T:
    """Await with an optional deadline. Writes may already be committed on timeout."""
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(operation, timeout) from exc
