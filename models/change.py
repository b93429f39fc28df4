"""Tracked page changes, their horizon checkpoints and metric-source snapshots."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from database import Base
from schemas.change import ChangeScope, DetectedChangeStatus


def _new_id() -> str:
    return str(uuid.uuid4())


class DetectedChange(Base):
    """A specific element/section/page modification observed between two scans."""

    __tablename__ = "detected_changes"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    page_id = Column(String, nullable=False, index=True)
    page_url = Column(Text, nullable=False)

    element = Column(String, nullable=False)
    element_type = Column(String, nullable=True)
    scope = Column(String, nullable=False, default=ChangeScope.ELEMENT.value)
    before_value = Column(Text, nullable=False, default="")
    after_value = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=True)
    hypothesis = Column(Text, nullable=True)
    observation_text = Column(Text, nullable=True)

    first_detected_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False, default=DetectedChangeStatus.WATCHING.value, index=True)
    status_reason = Column(Text, nullable=True)
    superseded_by = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    checkpoints = relationship(
        "ChangeCheckpoint",
        back_populates="change",
        order_by="ChangeCheckpoint.horizon_days",
        cascade="all, delete-orphan",
    )

    @validates("status")
    def _validate_status(self, _key, value):
        return DetectedChangeStatus(value).value

    @validates("scope")
    def _validate_scope(self, _key, value):
        return ChangeScope(value or ChangeScope.ELEMENT.value).value


class ChangeCheckpoint(Base):
    """Immutable evaluation of one change at one horizon."""

    __tablename__ = "change_checkpoints"
    __table_args__ = (UniqueConstraint("change_id", "horizon_days", name="uq_change_checkpoints_change_horizon"),)

    id = Column(String, primary_key=True, default=_new_id)
    change_id = Column(String, ForeignKey("detected_changes.id", ondelete="CASCADE"), nullable=False, index=True)
    horizon_days = Column(Integer, nullable=False)

    before_start = Column(DateTime(timezone=True), nullable=False)
    before_end = Column(DateTime(timezone=True), nullable=False)
    after_start = Column(DateTime(timezone=True), nullable=False)
    after_end = Column(DateTime(timezone=True), nullable=False)

    metrics_json = Column(JSONB, nullable=False)
    assessment = Column(String, nullable=False)
    confidence = Column(Float, nullable=True)
    reasoning = Column(Text, nullable=True)
    data_sources = Column(JSONB, nullable=True)
    computed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    change = relationship("DetectedChange", back_populates="checkpoints")


class AnalyticsSnapshot(Base):
    """Point-in-time output of a metric-source discovery call (e.g. table row counts)."""

    __tablename__ = "analytics_snapshots"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    tool_name = Column(String, nullable=False, index=True)
    tool_input = Column(JSONB, nullable=True)
    tool_output = Column(JSONB, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
