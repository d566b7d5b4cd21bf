"""
Story and StoryVersion models.

A story holds everything the generation and print stages produce for an
order. `asset_plan` and `print_metadata` are JSON columns, but they are only
written through `merge_asset_plan` / `merge_print_metadata`, which validate
the merged result against the typed schemas in `kcs.schemas.story`.
"""

import enum
import uuid

from pydantic import BaseModel
from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from kcs.core.exceptions import PipelineIntegrityError
from kcs.db.base import Base
from kcs.db.types import GUID
from kcs.schemas.story import AssetPlan, PrintMetadata


class StoryStatus(enum.Enum):
    """Generation progress of a story."""

    PENDING_EMOTIONAL_PROFILE = "pending_emotional_profile"
    PROFILE_READY = "profile_ready"
    OUTLINE_READY = "outline_ready"
    STORY_DRAFT_READY = "story_draft_ready"
    STORY_REVISED = "story_revised"
    STORY_FINALIZED = "story_finalized"


class PrintStatus(enum.Enum):
    """Print finishing state. Only ever moves forward."""

    COVER_GENERATED = "cover_generated"
    INTERIOR_GENERATED = "interior_generated"
    CMYK_CONVERTED = "cmyk_converted"
    ASSEMBLED = "assembled"
    COMPLETED = "completed"
    PARTIAL_UPLOAD = "partial_upload"
    UPLOAD_FAILED = "upload_failed"


PRINT_STATUS_RANK = {
    None: 0,
    PrintStatus.COVER_GENERATED: 1,
    PrintStatus.INTERIOR_GENERATED: 2,
    PrintStatus.CMYK_CONVERTED: 3,
    PrintStatus.ASSEMBLED: 4,
    PrintStatus.COMPLETED: 5,
    PrintStatus.PARTIAL_UPLOAD: 5,
    PrintStatus.UPLOAD_FAILED: 5,
}


class Story(Base):
    """Generation state for one order."""

    __tablename__ = "stories"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, unique=True)

    version = Column(Integer, default=1, nullable=False)
    status = Column(
        Enum(StoryStatus, values_callable=lambda obj: [e.value for e in obj], native_enum=False),
        default=StoryStatus.PENDING_EMOTIONAL_PROFILE,
        nullable=False,
    )

    # Generated content
    emotional_profile = Column(JSON)
    outline_text = Column(Text)
    draft_text = Column(Text)
    critique_text = Column(Text)
    revised_text = Column(Text)
    final_text = Column(Text)

    asset_plan = Column(JSON)

    # Print finishing
    print_status = Column(
        Enum(PrintStatus, values_callable=lambda obj: [e.value for e in obj], native_enum=False),
        nullable=True,
    )
    print_metadata = Column(JSON)

    # Optimistic lock, bumped on every flush that touches the row
    lock_version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    order = relationship("Order", back_populates="story")
    versions = relationship(
        "StoryVersion", back_populates="story", cascade="all, delete-orphan",
        order_by="StoryVersion.created_at",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    @property
    def plan(self) -> AssetPlan:
        return AssetPlan.model_validate(self.asset_plan or {})

    @property
    def print_meta(self) -> PrintMetadata:
        return PrintMetadata.model_validate(self.print_metadata or {})

    def merge_asset_plan(self, update: BaseModel) -> AssetPlan:
        """Apply the fields a stage set on its view of the plan."""
        data = self.plan.model_dump()
        data.update(update.model_dump(exclude_unset=True))
        plan = AssetPlan.model_validate(data)
        self.asset_plan = plan.model_dump(mode="json")
        return plan

    def merge_print_metadata(self, update: BaseModel) -> PrintMetadata:
        data = self.print_meta.model_dump()
        data.update(update.model_dump(exclude_unset=True))
        meta = PrintMetadata.model_validate(data)
        self.print_metadata = meta.model_dump(mode="json")
        return meta

    def advance_print_status(self, new_status: PrintStatus) -> None:
        """
        Move print_status forward.

        Re-entering the current rank is allowed so a redelivered job can
        finish again (handoff may settle on a different final state).
        Anything lower than the current rank is rejected.
        """
        current = PRINT_STATUS_RANK[self.print_status]
        target = PRINT_STATUS_RANK[new_status]
        if target < current:
            raise PipelineIntegrityError(
                f"print status cannot move from {self.print_status.value} "
                f"back to {new_status.value}"
            )
        self.print_status = new_status


class StoryVersion(Base):
    """Snapshot of story text at a named stage. Never updated."""

    __tablename__ = "story_versions"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    story_id = Column(GUID(), ForeignKey("stories.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    stage = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)
    meta = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    story = relationship("Story", back_populates="versions")
