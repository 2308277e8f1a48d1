"""Generation model: history of completed generations per user."""

import uuid

from sqlalchemy import Column, DateTime, Index, Integer, String

from database import Base


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    style = Column(String, nullable=True)
    quality = Column(String, nullable=True)
    batch_size = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_generations_user_created", "user_id", "created_at"),)
