"""
Integration configuration and audit log models

Stores third-party provider credentials (encrypted at rest) per
category/provider pair, plus an append-only log of provider activity.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Text, JSON, ForeignKey, Index, UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from integration_engine.core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntegrationCategory(str, enum.Enum):
    """Kinds of third-party integrations."""
    SHIPPING = "SHIPPING"
    TAX = "TAX"
    PAYMENT = "PAYMENT"
    EMAIL = "EMAIL"


class IntegrationTestStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class IntegrationConfig(Base):
    """
    One configured provider within a category.

    Credentials are an encrypted JSON blob and are only ever decrypted
    in memory (factory load, credential merge, connection tests).
    Higher priority wins when several providers are active.
    """
    __tablename__ = "integration_configs"
    __table_args__ = (
        UniqueConstraint("category", "provider", name="uq_integration_category_provider"),
        Index("ix_integration_configs_category_active", "category", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)

    category = Column(SQLEnum(IntegrationCategory), nullable=False)
    provider = Column(String(50), nullable=False)
    display_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    is_active = Column(Boolean, default=False, nullable=False)
    is_test_mode = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    credentials = Column(Text, nullable=False, default="")
    settings = Column(JSON, nullable=True)

    webhook_url = Column(String(255), nullable=True)
    webhook_secret = Column(String(128), nullable=True)

    test_status = Column(SQLEnum(IntegrationTestStatus), nullable=True)
    test_message = Column(Text, nullable=True)
    last_tested_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    logs = relationship("IntegrationLog", back_populates="integration", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<IntegrationConfig(category={self.category}, provider={self.provider}, active={self.is_active})>"


class IntegrationLog(Base):
    """Append-only record of provider activity (config changes, tests, API calls)."""
    __tablename__ = "integration_logs"
    __table_args__ = (
        Index("ix_integration_logs_integration_created", "integration_id", "created_at"),
        Index("ix_integration_logs_action", "action"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    integration_id = Column(String(36), ForeignKey("integration_configs.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(50), nullable=False)
    provider = Column(String(50), nullable=False)

    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    integration = relationship("IntegrationConfig", back_populates="logs")

    def __repr__(self):
        return f"<IntegrationLog(provider={self.provider}, action={self.action})>"
