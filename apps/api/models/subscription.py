"""Subscription model for plan enrollments."""

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class Subscription(Base):
    """A user's enrollment in a plan.

    Rows are never reused: reactivation after cancellation or expiry creates a
    new row, and at most one row per user may be active.
    """

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SubscriptionStatus.ACTIVE.value)
    interval = Column(String, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False, index=True)
    used_this_month = Column(Integer, nullable=False, default=0)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    payment_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            postgresql_where=(status == SubscriptionStatus.ACTIVE.value),
            sqlite_where=(status == SubscriptionStatus.ACTIVE.value),
        ),
    )
