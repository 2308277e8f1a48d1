"""Order model for paid credit purchases."""

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class OrderStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"


class Order(Base):
    """Checkout order. Reconciliation turns a paid order into exactly one ledger grant."""

    __tablename__ = "orders"

    order_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    credits_granted = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=OrderStatus.CREATED.value)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_email = Column(String, nullable=True)
    paid_detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
