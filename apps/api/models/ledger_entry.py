"""LedgerEntry model: append-only record of credit movements."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from database import Base


class LedgerKind(str, Enum):
    NEW_USER_GRANT = "new_user"
    ORDER_PAYMENT = "order_pay"
    SYSTEM_GRANT = "system_add"
    CONSUMPTION = "consumption"
    SUBSCRIPTION_GRANT = "subscription_credit"
    PERMANENT_GRANT = "permanent_credit"
    BONUS_GRANT = "bonus_credit"
    TRIAL_PACK_GRANT = "trial_pack_credit"
    BONUS_EXPIRY = "bonus_expired"


CREDIT_KINDS = frozenset(
    {
        LedgerKind.NEW_USER_GRANT,
        LedgerKind.ORDER_PAYMENT,
        LedgerKind.SYSTEM_GRANT,
        LedgerKind.SUBSCRIPTION_GRANT,
        LedgerKind.PERMANENT_GRANT,
        LedgerKind.BONUS_GRANT,
        LedgerKind.TRIAL_PACK_GRANT,
    }
)


class LedgerEntry(Base):
    """Immutable credit movement. Reversals are new entries with a negated amount."""

    __tablename__ = "ledger_entries"

    transaction_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    # Only grants produced by an order carry this; one ledger entry per order.
    related_order_id = Column(String, nullable=True, unique=True)
    # Debits and expiry offsets point back at the batch they were charged against.
    source_transaction_id = Column(String, nullable=True, index=True)
    source_order_id = Column(String, nullable=True)
    reason = Column(String, nullable=True)

    user = relationship("User", back_populates="ledger_entries")

    __table_args__ = (
        Index("ix_ledger_entries_user_created", "user_id", "created_at"),
        Index(
            "uq_ledger_entries_bonus_expiry_source",
            "source_transaction_id",
            unique=True,
            postgresql_where=(kind == LedgerKind.BONUS_EXPIRY.value),
            sqlite_where=(kind == LedgerKind.BONUS_EXPIRY.value),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "amount": self.amount,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "related_order_id": self.related_order_id,
            "source_transaction_id": self.source_transaction_id,
            "reason": self.reason,
        }
