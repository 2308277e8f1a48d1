"""SubscriptionUsage model: append-only audit of metered generations."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionUsage(Base):
    """One row per recorded generation against a subscription. Never read back by billing."""

    __tablename__ = "subscription_usage"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, nullable=False, index=True)
    usage_type = Column(String, nullable=False)
    model_used = Column(String, nullable=True)
    prompt = Column(String(1000), nullable=True)
    generation_id = Column(String, nullable=True)
    credits_consumed = Column(Integer, nullable=False, default=0)
    count = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
