from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Startup(Base):
    __tablename__ = "startups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    stage: Mapped[str] = mapped_column(String(50), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    verticals_json: Mapped[str] = mapped_column(Text, default="[]")
    regions_json: Mapped[str] = mapped_column(Text, default="[]")
    rounds_json: Mapped[str] = mapped_column(Text, default="[]")  # round names the startup is eligible for
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assignments: Mapped[list[Assignment]] = relationship("Assignment", back_populates="startup", cascade="all, delete-orphan")


class Juror(Base):
    __tablename__ = "jurors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), default="")
    company: Mapped[str] = mapped_column(String(300), default="")
    job_title: Mapped[str] = mapped_column(String(200), default="")
    preferred_regions_json: Mapped[str] = mapped_column(Text, default="[]")
    target_verticals_json: Mapped[str] = mapped_column(Text, default="[]")
    preferred_stages_json: Mapped[str] = mapped_column(Text, default="[]")
    thesis_keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    evaluation_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = dynamic target
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    assignments: Mapped[list[Assignment]] = relationship("Assignment", back_populates="juror", cascade="all, delete-orphan")


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        UniqueConstraint("startup_id", "juror_id", "round_name", name="uq_assignment_pair_round"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[str] = mapped_column(String(64), ForeignKey("startups.id"), nullable=False)
    juror_id: Mapped[str] = mapped_column(String(64), ForeignKey("jurors.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="assigned")  # assigned | completed | withdrawn
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    startup: Mapped[Startup] = relationship("Startup", back_populates="assignments")
    juror: Mapped[Juror] = relationship("Juror", back_populates="assignments")


class MatchmakingConfig(Base):
    __tablename__ = "matchmaking_configs"

    round_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    vertical_weight: Mapped[float] = mapped_column(Float, default=40.0)
    stage_weight: Mapped[float] = mapped_column(Float, default=20.0)
    region_weight: Mapped[float] = mapped_column(Float, default=20.0)
    thesis_weight: Mapped[float] = mapped_column(Float, default=10.0)
    load_penalty_weight: Mapped[float] = mapped_column(Float, default=10.0)
    target_jurors_per_startup: Mapped[int] = mapped_column(Integer, default=3)
    top_k_per_juror: Mapped[int] = mapped_column(Integer, default=3)
    use_ai_enhancement: Mapped[bool] = mapped_column(Boolean, default=False)
    deterministic_seed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class JurorConflict(Base):
    __tablename__ = "juror_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    juror_id: Mapped[str] = mapped_column(String(64), ForeignKey("jurors.id"), nullable=False)
    startup_id: Mapped[str] = mapped_column(String(64), ForeignKey("startups.id"), nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(50), default="conflict_of_interest")


class InterestSignal(Base):
    """A juror's explicit interest in a startup, recorded during an earlier round stage."""
    __tablename__ = "interest_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    juror_id: Mapped[str] = mapped_column(String(64), ForeignKey("jurors.id"), nullable=False)
    startup_id: Mapped[str] = mapped_column(String(64), ForeignKey("startups.id"), nullable=False)
    round_name: Mapped[str] = mapped_column(String(50), nullable=False)
    wants_pitch_session: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(30), default="submitted")  # draft | submitted
