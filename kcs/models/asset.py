"""
Asset model for uploaded and generated files.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class AssetType:
    IMAGE = "image"
    PDF = "pdf"


class Asset(Base):
    """An uploaded or generated file. Rows are never updated after insert."""

    __tablename__ = "assets"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False, default=AssetType.IMAGE)
    url = Column(String(2000), nullable=False)
    # role, ordinal, provenance and anything else the producer wants to keep
    meta = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="assets")
