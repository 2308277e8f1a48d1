"""Entitlement check and usage recording endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from exceptions import BillingError
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import ensure_user, get_entitlement_engine, http_error
from services.entitlements import EntitlementEngine

router = APIRouter()


class EntitlementCheckRequest(BaseModel):
    user_id: Optional[str] = None
    style: Optional[str] = Field(default=None, max_length=64)
    quality: Optional[str] = Field(default=None, max_length=32)
    batch_size: int = Field(default=1, ge=1, le=100)


class UsageRequest(BaseModel):
    user_id: Optional[str] = None
    generation_id: Optional[str] = None
    credits_used: int = Field(default=0, ge=0)
    style: Optional[str] = None
    prompt: Optional[str] = None


@router.post("/check")
async def check_entitlement(
    request: EntitlementCheckRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    entitlements: EntitlementEngine = Depends(get_entitlement_engine),
):
    """Return the decision as data; a denial is a normal 200 response."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    try:
        decision = await entitlements.can_generate(
            scoped_user_id,
            request.style,
            request.quality,
            request.batch_size,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return decision.to_dict()


@router.post("/usage")
async def record_usage(
    request: UsageRequest,
    auth: AuthContext = Depends(get_auth_context),
    entitlements: EntitlementEngine = Depends(get_entitlement_engine),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    recorded = await entitlements.record_usage(
        scoped_user_id,
        request.generation_id,
        request.credits_used,
        style=request.style,
        prompt=request.prompt,
    )
    return {"recorded": recorded}
