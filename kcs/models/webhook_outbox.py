"""
Pending partner notifications.
"""

import enum
import uuid

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class OutboxStatus(enum.Enum):
    """Delivery state of an outbox row."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class WebhookOutbox(Base):
    __tablename__ = "webhook_outbox"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    target = Column(String(1000))
    payload = Column(JSON, nullable=False)
    signature = Column(String(128))
    attempts = Column(Integer, default=0, nullable=False)
    status = Column(
        Enum(OutboxStatus, values_callable=lambda obj: [e.value for e in obj], native_enum=False),
        default=OutboxStatus.PENDING,
        nullable=False,
        index=True,
    )
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    delivered_at = Column(DateTime(timezone=True))

    order = relationship("Order", back_populates="outbox")
