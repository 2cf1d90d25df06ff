"""
Analysis job rows.

One row per submitted situation, keyed by the job id. The row moves through
``pending -> processing -> completed | failed | error`` and, once completed,
carries every normalized result field flattened into snake_case columns.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from database.engine import Base


class JobStatus(str, PyEnum):
    """Lifecycle status shared by analyses and submissions."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ERROR)


class Analysis(Base):
    __tablename__ = "analyses"
    __table_args__ = (Index("idx_analyses_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    input_text: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.PENDING.value, index=True)
    is_ready: Mapped[bool] = mapped_column(Boolean, default=False)

    # Scores
    power_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gravity_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confidence_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Radar duplicates
    radar_control: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    radar_gravity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    radar_confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    radar_stability: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    radar_strategy: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Summaries
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snapshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    whats_happening: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    why_it_matters: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    narrative_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Strategic moves
    immediate_move: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    strategic_tool: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analytical_check: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    long_term_fix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Explanations / definitions
    power_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gravity_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    power_definition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    gravity_definition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_definition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Classification
    issue_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issue_category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issue_layer: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Diagnostics
    diagnostic_state: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnostic_so_what: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnosis_primary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnosis_secondary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnosis_tertiary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    radar_red_1: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    radar_red_2: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    radar_red_3: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tactical_moves: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    psychological_profile: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Run bookkeeping
    thread_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    assistant_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    vector_store_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    integration_mode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    error_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}
