from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class IntakeForm(Base):
    __tablename__ = "intake_forms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    contact_name: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_email: Mapped[str] = mapped_column(String(320), nullable=False)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    project_name: Mapped[str] = mapped_column(String(200), nullable=False)
    project_type: Mapped[str] = mapped_column(String(50), nullable=False)
    project_description: Mapped[str] = mapped_column(Text, nullable=False)

    key_requirements: Mapped[str] = mapped_column(Text, nullable=False)
    business_goals: Mapped[str | None] = mapped_column(Text, nullable=True)
    success_metrics: Mapped[str | None] = mapped_column(Text, nullable=True)

    timeline: Mapped[str] = mapped_column(String(30), nullable=False)
    budget_range: Mapped[str] = mapped_column(String(30), nullable=False)
    budget_flexibility: Mapped[str | None] = mapped_column(String(30), nullable=True)

    preferred_tech_stack_json: Mapped[str] = mapped_column(Text, default="[]")
    existing_systems: Mapped[str | None] = mapped_column(Text, nullable=True)
    integration_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    ai_qualification_score: Mapped[float] = mapped_column(Float, default=0.0)
    ai_confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    ai_insights_json: Mapped[str] = mapped_column(Text, default="{}")
    ai_recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(30), default="submitted", index=True)  # see workflow.IntakeStatus
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low | medium | high | urgent

    preferred_meeting_times_json: Mapped[str] = mapped_column(Text, default="[]")
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    meeting_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    meeting_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    metadata_json: Mapped[str] = mapped_column(Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    score: Mapped[IntakeScore | None] = relationship(
        "IntakeScore", back_populates="intake_form", uselist=False, cascade="all, delete-orphan",
    )


class IntakeScore(Base):
    __tablename__ = "intake_scores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    intake_form_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("intake_forms.id", ondelete="CASCADE"), nullable=False, unique=True,
    )

    budget_score: Mapped[float] = mapped_column(Float, default=0.0)
    timeline_score: Mapped[float] = mapped_column(Float, default=0.0)
    technical_complexity_score: Mapped[float] = mapped_column(Float, default=0.0)
    business_impact_score: Mapped[float] = mapped_column(Float, default=0.0)
    market_potential_score: Mapped[float] = mapped_column(Float, default=0.0)

    overall_score: Mapped[float] = mapped_column(Float, default=0.0)
    confidence_level: Mapped[float] = mapped_column(Float, default=0.0)

    ai_analysis_json: Mapped[str] = mapped_column(Text, default="{}")
    risk_factors_json: Mapped[str] = mapped_column(Text, default="[]")
    opportunity_factors_json: Mapped[str] = mapped_column(Text, default="[]")

    recommended_approach: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_project_duration: Mapped[str | None] = mapped_column(String(50), nullable=True)
    suggested_team_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_steps_json: Mapped[str] = mapped_column(Text, default="[]")

    scoring_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    intake_form: Mapped[IntakeForm] = relationship("IntakeForm", back_populates="score")
