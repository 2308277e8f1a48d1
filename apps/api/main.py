"""
Generation Billing - FastAPI Backend
Credit ledger, subscription entitlements and order reconciliation.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    entitlements,
    subscriptions,
    generations,
    internal,
    webhooks,
)
from services.credits import ConsumptionEngine
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.monthly_reset import MonthlyResetJob
from services.subscriptions import SubscriptionLifecycleManager


async def run_monthly_reset_tick(locks: KeyedLock) -> dict:
    async with async_session_maker() as db:
        ledger = ConsumptionEngine(
            LedgerStore(db),
            locks,
            default_timeout=settings.LEDGER_OPERATION_TIMEOUT_SECONDS,
        )
        job = MonthlyResetJob(db, SubscriptionLifecycleManager(db), ledger)
        return await job.run()


async def run_bonus_expiry_tick(locks: KeyedLock) -> int:
    async with async_session_maker() as db:
        ledger = ConsumptionEngine(LedgerStore(db), locks)
        return await ledger.expire_bonus_grants()


async def _periodic_monthly_reset() -> None:
    interval_minutes = max(int(settings.MONTHLY_RESET_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_monthly_reset_tick(app.state.credit_locks)
            if not result.get("skipped"):
                counts = result.get("results", {})
                print(
                    f"🗓️ Monthly reset: subscriptions={counts.get('subscriptions_reset', 0)} "
                    f"bonus_expired={counts.get('bonus_entries_expired', 0)} "
                    f"errors={len(counts.get('errors', []))}"
                )
        except Exception as exc:
            print(f"⚠️ Monthly reset tick failed: {exc}")


async def _periodic_bonus_expiry() -> None:
    interval_minutes = max(int(settings.BONUS_EXPIRY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await run_bonus_expiry_tick(app.state.credit_locks)
            if expired:
                print(f"⏳ Bonus expiry sweep: expired={expired}")
        except Exception as exc:
            print(f"⚠️ Bonus expiry tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Generation Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    background_tasks = []
    if int(settings.MONTHLY_RESET_INTERVAL_MINUTES) > 0:
        background_tasks.append(asyncio.create_task(_periodic_monthly_reset()))
        print(
            "📅 Monthly reset loop enabled "
            f"(every {int(settings.MONTHLY_RESET_INTERVAL_MINUTES)} min)."
        )
    if int(settings.BONUS_EXPIRY_INTERVAL_MINUTES) > 0:
        background_tasks.append(asyncio.create_task(_periodic_bonus_expiry()))
        print(
            "📅 Bonus expiry loop enabled "
            f"(every {int(settings.BONUS_EXPIRY_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    for task in background_tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Generation Billing API",
    description="Credit ledger, plan entitlements and subscription lifecycle for generation workloads",
    version="0.1.0",
    lifespan=lifespan,
)

# Per-user write serialization shared by every request in this process.
app.state.credit_locks = KeyedLock()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(entitlements.router, prefix="/entitlements", tags=["Entitlements"])
app.include_router(subscriptions.router, prefix="/subscription", tags=["Subscriptions"])
app.include_router(generations.router, prefix="/generations", tags=["Generations"])
app.include_router(internal.router, prefix="/internal", tags=["Internal"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Generation Billing API",
        "version": "0.1.0",
        "status": "running"
    }
