"""
Shipping method and rule models

Methods are either platform-wide (seller_id NULL) or owned by one seller.
Each method carries priority-ordered rules whose conditions select the
price for a given cart weight, value and destination.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Numeric, Text, JSON, ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from integration_engine.core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShippingMethodType(str, enum.Enum):
    FLAT_RATE = "FLAT_RATE"
    WEIGHT_BASED = "WEIGHT_BASED"
    DISTANCE_BASED = "DISTANCE_BASED"
    FREE_SHIPPING = "FREE_SHIPPING"
    PICKUP_IN_STORE = "PICKUP_IN_STORE"
    HYPERLOCAL = "HYPERLOCAL"


class ShippingMethod(Base):
    __tablename__ = "shipping_methods"
    __table_args__ = (
        Index("ix_shipping_methods_seller_active", "seller_id", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(ShippingMethodType), nullable=False)

    # NULL = platform-wide method
    seller_id = Column(String(36), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    rules = relationship(
        "ShippingRule",
        back_populates="shipping_method",
        cascade="all, delete-orphan",
        order_by="ShippingRule.priority.desc()",
    )

    def __repr__(self):
        return f"<ShippingMethod(name={self.name}, type={self.type})>"


class ShippingRule(Base):
    """
    Pricing rule for a shipping method.

    conditions JSON keys (all optional):
        weightRange: {"min": kg, "max": kg}
        cartValueRange: {"min": amount, "max": amount}
        country, state, city, postalCode
    """
    __tablename__ = "shipping_rules"
    __table_args__ = (
        Index("ix_shipping_rules_method_priority", "shipping_method_id", "priority"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    shipping_method_id = Column(String(36), ForeignKey("shipping_methods.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    conditions = Column(JSON, nullable=False, default=dict)
    rate = Column(Numeric(10, 2), nullable=False)
    free_shipping_threshold = Column(Numeric(10, 2), nullable=True)
    estimated_days = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    shipping_method = relationship("ShippingMethod", back_populates="rules")

    def __repr__(self):
        return f"<ShippingRule(name={self.name}, priority={self.priority}, rate={self.rate})>"
