"""
ORM-модели базы данных.

Назначение:
- Хранение встречи (work-item) и её статуса
- Выходы стадий (транскрипт, action items, решения, тональность, follow-up, таймлайн)
- Учёт fan-in по стадиям (meeting_stage_runs)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from meeting_pipeline.common.time import utc_now
from meeting_pipeline.domain.enums import MeetingStatus, StageName, StageRunState


# =============================================================================
# BASE
# =============================================================================
class Base(DeclarativeBase):
    pass


# =============================================================================
# MEETING
# =============================================================================
class Meeting(Base):
    """
    Основная сущность: встреча (одна загруженная запись).
    """

    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    requester_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    status: Mapped[MeetingStatus] = mapped_column(Enum(MeetingStatus), nullable=False)

    # Вход пайплайна
    source_locator: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Выходы стадий (каждым полем владеет ровно одна стадия)
    transcript: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    participants: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    action_items: Mapped[list | None] = mapped_column(JSON, nullable=True)
    decisions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    sentiment: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    participant_sentiment: Mapped[list | None] = mapped_column(JSON, nullable=True)
    follow_ups: Mapped[list | None] = mapped_column(JSON, nullable=True)
    timeline: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # processing meta
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    processing_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # fan-in: сколько обязательных fan-out стадий ещё не завершено
    outstanding_stages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    stage_runs: Mapped[list[MeetingStageRun]] = relationship(
        back_populates="meeting",
        cascade="all, delete-orphan",
    )

    def processing_meta(self) -> dict:
        return {
            "started_at": self.processing_started_at.isoformat()
            if self.processing_started_at
            else None,
            "completed_at": self.processing_completed_at.isoformat()
            if self.processing_completed_at
            else None,
            "cost": round(float(self.processing_cost or 0.0), 6),
            "model": self.processing_model,
            "error": self.processing_error,
        }


# =============================================================================
# STAGE RUNS (fan-in)
# =============================================================================
class MeetingStageRun(Base):
    """
    Состояние fan-out стадии в текущем прогоне встречи.

    Условное обновление queued -> completed/failed делает повторный
    callback о завершении стадии no-op.
    """

    __tablename__ = "meeting_stage_runs"
    __table_args__ = (UniqueConstraint("meeting_id", "stage", name="uq_meeting_stage_runs"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meeting_id: Mapped[str] = mapped_column(ForeignKey("meetings.id"), nullable=False)
    stage: Mapped[StageName] = mapped_column(Enum(StageName), nullable=False)
    state: Mapped[StageRunState] = mapped_column(Enum(StageRunState), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    meeting: Mapped[Meeting] = relationship(back_populates="stage_runs")
