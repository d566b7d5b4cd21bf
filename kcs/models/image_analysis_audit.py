"""
Audit rows written by the image analysis stage.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class ImageAnalysisAudit(Base):
    """One row per analyzed role (child, supporting character, location)."""

    __tablename__ = "image_analysis_audits"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    asset_id = Column(GUID(), ForeignKey("assets.id"))
    role = Column(String(50), nullable=False)
    ordinal = Column(Integer, default=0)
    descriptor = Column(JSON)
    raw_response = Column(Text)
    face_crop_meta = Column(JSON)
    provider = Column(String(50))
    model = Column(String(100))
    attempts = Column(Integer, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
