"""SystemConfig model for persisted job markers."""

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.sql import func

from database import Base


class SystemConfig(Base):
    """Key/value row. The unique key doubles as a run-once marker for scheduled jobs."""

    __tablename__ = "system_configs"

    config_key = Column(String, primary_key=True)
    config_value = Column(Text, nullable=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
