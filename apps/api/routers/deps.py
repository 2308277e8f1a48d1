"""Request-scoped wiring of the billing services and error translation."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from exceptions import (
    BillingError,
    InsufficientCreditsError,
    NotFoundError,
    ReconciliationError,
    StorageConflictError,
    StorageUnavailableError,
    SubscriptionConflictError,
)
from models.user import User
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine
from services.entitlements import EntitlementEngine
from services.generation_flow import GenerationGate
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.monthly_reset import MonthlyResetJob
from services.reconciliation import OrderReconciliation
from services.storage import storage_errors
from services.subscriptions import SubscriptionLifecycleManager
from services.timeutils import Clock, utc_now
from services.usage import SqlGenerationHistory, SqlUsageRecorder


def http_error(exc: Exception) -> HTTPException:
    """Map a domain failure onto the HTTP status the API reports for it."""
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(
            status_code=402,
            detail={"message": str(exc), "required": exc.required, "available": exc.available},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (SubscriptionConflictError, StorageConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (ReconciliationError, ValueError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, BillingError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    try:
        async with storage_errors(db, "user create", key=user_id):
            db.add(user)
            await db.commit()
    except StorageConflictError:
        # A concurrent first request created the row.
        result = await db.execute(select(User).where(User.id == user_id))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise
        return existing
    return user


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or utc_now


def get_credit_locks(request: Request) -> KeyedLock:
    return request.app.state.credit_locks


def get_ledger_store(db: AsyncSession = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db)


def get_consumption_engine(
    store: LedgerStore = Depends(get_ledger_store),
    locks: KeyedLock = Depends(get_credit_locks),
    clock: Clock = Depends(get_clock),
) -> ConsumptionEngine:
    return ConsumptionEngine(
        store,
        locks,
        clock=clock,
        default_timeout=settings.LEDGER_OPERATION_TIMEOUT_SECONDS,
    )


def get_balance_calculator(
    store: LedgerStore = Depends(get_ledger_store),
    clock: Clock = Depends(get_clock),
) -> BalanceCalculator:
    return BalanceCalculator(store, clock=clock)


def get_subscription_manager(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(db, clock=clock)


def get_generation_history(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SqlGenerationHistory:
    return SqlGenerationHistory(db, clock=clock)


def get_entitlement_engine(
    db: AsyncSession = Depends(get_db),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
    history: SqlGenerationHistory = Depends(get_generation_history),
    balances: BalanceCalculator = Depends(get_balance_calculator),
    clock: Clock = Depends(get_clock),
) -> EntitlementEngine:
    return EntitlementEngine(
        subscriptions,
        history,
        SqlUsageRecorder(db),
        balances=balances,
        clock=clock,
        timezone_name=settings.REFERENCE_TIMEZONE,
    )


def get_reconciliation(
    store: LedgerStore = Depends(get_ledger_store),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
) -> OrderReconciliation:
    return OrderReconciliation(store, engine)


def get_generation_gate(
    entitlements: EntitlementEngine = Depends(get_entitlement_engine),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
    history: SqlGenerationHistory = Depends(get_generation_history),
) -> GenerationGate:
    return GenerationGate(entitlements, engine, history, credit_cost=settings.GENERATION_CREDIT_COST)


def get_monthly_reset_job(
    db: AsyncSession = Depends(get_db),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
    clock: Clock = Depends(get_clock),
) -> MonthlyResetJob:
    return MonthlyResetJob(db, subscriptions, engine, clock=clock)
