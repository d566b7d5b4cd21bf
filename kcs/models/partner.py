"""
Partner model for storefronts that submit orders.
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class Partner(Base):
    """A storefront allowed to submit orders through the intake endpoint."""

    __tablename__ = "partners"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Shared secret for intake signatures
    intake_secret = Column(String(255), nullable=False)

    # Outbound notification
    webhook_url = Column(String(1000))
    webhook_secret = Column(String(255))

    # Folder inside the delivery bucket that receives finished files
    delivery_folder = Column(String(500))

    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    orders = relationship("Order", back_populates="partner")
    print_configs = relationship("PrintConfig", back_populates="partner")
