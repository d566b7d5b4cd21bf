"""
Append-only audit trail of pipeline transitions.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.db.base import Base
from kcs.db.types import GUID


class Event(Base):
    __tablename__ = "events"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, default=dict)

    # Set client-side for sub-second ordering
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    order = relationship("Order", back_populates="events")
