"""Generation gate endpoints called around a provider generation."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from exceptions import BillingError
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.deps import ensure_user, get_generation_gate, http_error
from routers.rate_limit import rate_limit
from services.generation_flow import GenerationGate

router = APIRouter()


class AuthorizeRequest(BaseModel):
    user_id: Optional[str] = None
    style: Optional[str] = Field(default=None, max_length=64)
    quality: Optional[str] = Field(default=None, max_length=32)
    batch_size: int = Field(default=1, ge=1, le=100)
    charge_credits: bool = False


class CompleteRequest(BaseModel):
    user_id: Optional[str] = None
    generation_id: Optional[str] = Field(default=None, max_length=64)
    style: Optional[str] = Field(default=None, max_length=64)
    quality: Optional[str] = Field(default=None, max_length=32)
    batch_size: int = Field(default=1, ge=1, le=100)
    prompt: Optional[str] = None
    credits_used: int = Field(default=0, ge=0)


@router.post("/authorize")
async def authorize_generation(
    request: AuthorizeRequest,
    _rate_limit: None = Depends(rate_limit("generation_authorize", limit=60, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    gate: GenerationGate = Depends(get_generation_gate),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id, auth.email)
    try:
        return await gate.authorize(
            scoped_user_id,
            style=request.style,
            quality=request.quality,
            batch_size=request.batch_size,
            charge_credits=request.charge_credits,
        )
    except (BillingError, ValueError) as exc:
        raise http_error(exc) from exc


@router.post("/complete")
async def complete_generation(
    request: CompleteRequest,
    auth: AuthContext = Depends(get_auth_context),
    gate: GenerationGate = Depends(get_generation_gate),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        return await gate.complete(
            scoped_user_id,
            style=request.style,
            quality=request.quality,
            batch_size=request.batch_size,
            prompt=request.prompt,
            generation_id=request.generation_id,
            credits_used=request.credits_used,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
