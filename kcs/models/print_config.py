"""
Per reading-age print configuration.
"""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class PrintConfig(Base):
    """
    Typography, margins and model preferences for one reading age.

    Rows with a partner_id override the default row (partner_id NULL,
    is_default True) for that partner.
    """

    __tablename__ = "print_configs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    partner_id = Column(GUID(), ForeignKey("partners.id"), nullable=True, index=True)
    reading_age = Column(String(10), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    # Text overlay
    font_family = Column(String(100), default="Arial")
    font_size = Column(Integer, default=100)
    line_spacing = Column(Integer, default=110)
    text_color = Column(String(9), default="#000000")
    text_width_percent = Column(Integer, default=80)
    border_percent = Column(Integer, default=5)
    max_words = Column(Integer, default=60)

    # Page geometry
    bleed_percent = Column(Float, default=3.5)
    safe_margin_mm = Column(Float, default=6.0)
    icc_profile = Column(String(255), default="CGATS21_CRPC1.icc")

    # {"positions": [...], "maxCharThreshold": 450, "aiPlacementEnabled": true}
    overlay_preferences = Column(JSON, default=dict)
    # {"cover_front": {"provider": "openai", "model": "gpt-image-1"}, ...}
    image_model_preferences = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    partner = relationship("Partner", back_populates="print_configs")
