"""
Authentication router: session issuance for billing accounts and profile lookup.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from exceptions import BillingError
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, require_internal_token
from routers.deps import get_balance_calculator, get_consumption_engine, http_error
from services.balance import BalanceCalculator
from services.credits import ConsumptionEngine
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)


class SessionRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    user_id: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    session_token: str
    session_expires_at: int
    new_user_credits: int = 0


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    left_credits: int = 0
    is_recharged: bool = False


@router.post("/session", response_model=SessionResponse, dependencies=[Depends(require_internal_token)])
async def create_session(
    request: SessionRequest,
    db: AsyncSession = Depends(get_db),
    engine: ConsumptionEngine = Depends(get_consumption_engine),
):
    """
    Upsert the account behind a verified identity and sign a session for it.
    First sign-in also issues the one-time new-user credits.
    """
    user: Optional[User] = None
    if request.user_id:
        result = await db.execute(select(User).where(User.id == request.user_id))
        user = result.scalar_one_or_none()
    if not user:
        result = await db.execute(select(User).where(User.email == request.email))
        user = result.scalar_one_or_none()

    if not user:
        user = User(id=request.user_id or str(uuid.uuid4()), email=request.email, name=request.name)
        db.add(user)
    elif request.name:
        user.name = request.name
    await db.commit()
    user_id = user.id

    try:
        grant = await engine.grant_new_user_bonus(user_id, settings.NEW_USER_CREDITS)
    except BillingError as exc:
        raise http_error(exc) from exc
    if grant is not None:
        logger.info("Issued %s new-user credits to %s", grant.amount, user_id)

    session = create_session_token(user_id, request.email)
    return SessionResponse(
        user_id=user_id,
        email=request.email,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
        new_user_credits=int(grant.amount) if grant is not None else 0,
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    balances: BalanceCalculator = Depends(get_balance_calculator),
):
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    try:
        balance = await balances.get_balance(user.id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        left_credits=balance.left_credits,
        is_recharged=balance.is_recharged,
    )
