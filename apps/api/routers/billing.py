"""Billing and credits router."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from exceptions import BillingError
from models.ledger_entry import LedgerKind
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, require_internal_token
from routers.deps import (
    ensure_user,
    get_balance_calculator,
    get_consumption_engine,
    get_entitlement_engine,
    get_ledger_store,
    http_error,
)
from routers.rate_limit import rate_limit
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine
from services.entitlements import EntitlementEngine
from services.ledger_store import LedgerStore

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeRequest(BaseModel):
    user_id: Optional[str] = None
    amount: int = Field(ge=1, le=100000)
    reason: str = Field(default="generation", max_length=255)


class GrantRequest(BaseModel):
    user_id: str
    amount: int = Field(ge=1, le=1000000)
    kind: LedgerKind = LedgerKind.SYSTEM_GRANT
    expires_at: Optional[datetime] = None
    order_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=255)


@router.get("/credits")
async def credits_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    balances: BalanceCalculator = Depends(get_balance_calculator),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    try:
        balance = await balances.get_balance(scoped_user_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"user_id": scoped_user_id, **balance.to_dict()}


@router.get("/summary")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    entitlements: EntitlementEngine = Depends(get_entitlement_engine),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    try:
        summary = await entitlements.summarize(scoped_user_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {"user_id": scoped_user_id, **summary}


@router.get("/ledger")
async def ledger_history(
    user_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    store: LedgerStore = Depends(get_ledger_store),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        entries = await store.list_history(scoped_user_id, page=page, limit=limit)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {
        "user_id": scoped_user_id,
        "page": page,
        "limit": limit,
        "items": [entry.to_dict() for entry in entries],
    }


@router.post("/consume")
async def consume_credits(
    request: ConsumeRequest,
    _rate_limit: None = Depends(rate_limit("billing_consume", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
    balances: BalanceCalculator = Depends(get_balance_calculator),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    try:
        debit = await engine.consume(scoped_user_id, request.amount, request.reason)
        balance = await balances.get_balance(scoped_user_id)
    except (BillingError, ValueError) as exc:
        raise http_error(exc) from exc
    return {
        "ok": True,
        "transaction_id": debit.transaction_id,
        "credits_used": request.amount,
        "balance_after": balance.left_credits,
    }


@router.post("/grant", dependencies=[Depends(require_internal_token)])
async def grant_credits(
    request: GrantRequest,
    db: AsyncSession = Depends(get_db),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
    balances: BalanceCalculator = Depends(get_balance_calculator),
):
    await ensure_user(db, request.user_id)
    try:
        entry = await engine.grant(
            request.user_id,
            request.amount,
            request.kind,
            expires_at=request.expires_at,
            related_order_id=request.order_id,
            reason=request.reason,
        )
        balance = await balances.get_balance(request.user_id)
    except (BillingError, ValueError) as exc:
        raise http_error(exc) from exc
    logger.info("Granted %s %s credits to user %s", request.amount, request.kind.value, request.user_id)
    return {
        "ok": True,
        "entry": entry.to_dict(),
        "balance_after": balance.left_credits,
    }


@router.post("/new-user-grant")
async def new_user_grant(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
):
    await ensure_user(db, auth.user_id, auth.email)
    try:
        entry = await engine.grant_new_user_bonus(auth.user_id, settings.NEW_USER_CREDITS)
    except BillingError as exc:
        raise http_error(exc) from exc
    return {
        "granted": entry is not None,
        "credits": int(entry.amount) if entry is not None else 0,
    }
