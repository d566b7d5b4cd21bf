"""
Ledger of provider calls already paid for.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class ProviderCall(Base):
    """
    Output of one provider call, keyed by a token derived from the order,
    stage and call content. A redelivered stage reads its earlier outputs
    from here instead of calling the provider again.
    """

    __tablename__ = "provider_calls"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    token = Column(String(64), unique=True, nullable=False, index=True)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    stage = Column(String(50), nullable=False)
    logical_stage = Column(String(50), nullable=False)
    provider = Column(String(50))
    model = Column(String(100))
    output = Column(Text, nullable=False)
    meta = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
