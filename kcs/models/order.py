"""
Order and OrderBrief models.
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class OrderStatus(enum.Enum):
    """Position of an order in the pipeline."""

    PENDING_IMAGE_ANALYSIS = "pending_image_analysis"
    IMAGE_ANALYSIS_COMPLETE = "image_analysis_complete"
    STORY_PENDING = "story_pending"
    STORY_DRAFT_READY = "story_draft_ready"
    ASSETS_IN_PROGRESS = "assets_in_progress"
    PREPRESS_READY = "prepress_ready"
    COVERS_READY = "covers_ready"
    PRINT_SUBMITTED = "print_submitted"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class Order(Base):
    """One partner submission and its downstream lifecycle."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("partner_id", "idempotency_key", name="uq_orders_partner_key"),
    )

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    partner_id = Column(GUID(), ForeignKey("partners.id"), nullable=False, index=True)
    partner_order_ref = Column(String(255))
    idempotency_key = Column(String(255), nullable=False)

    product_sku = Column(String(100), nullable=False)
    currency = Column(String(3), nullable=False)
    customer_email = Column(String(320), nullable=False)
    allow_user_edit = Column(Boolean, default=False, nullable=False)
    source = Column(String(50), default="partner_api")

    status = Column(
        Enum(OrderStatus, values_callable=lambda obj: [e.value for e in obj], native_enum=False),
        default=OrderStatus.PENDING_IMAGE_ANALYSIS,
        nullable=False,
    )

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    partner = relationship("Partner", back_populates="orders")
    brief = relationship(
        "OrderBrief", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )
    story = relationship(
        "Story", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )
    assets = relationship(
        "Asset", back_populates="order", cascade="all, delete-orphan",
        order_by="Asset.created_at",
    )
    events = relationship(
        "Event", back_populates="order", cascade="all, delete-orphan",
        order_by="Event.created_at",
    )
    outbox = relationship(
        "WebhookOutbox", back_populates="order", cascade="all, delete-orphan"
    )

    @property
    def order_number(self) -> str:
        return self.partner_order_ref or str(self.id)


class OrderBrief(Base):
    """Validated submission payload plus what later stages derive from it."""

    __tablename__ = "order_briefs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, unique=True)

    raw = Column(JSON, nullable=False)
    reading_level = Column(String(100), nullable=False)
    constraints = Column(JSON, default=dict)

    # Appended by image analysis
    image_descriptors = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    order = relationship("Order", back_populates="brief")
