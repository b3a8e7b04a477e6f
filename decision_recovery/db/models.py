from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    # Null for identities provisioned by an external provider.
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="email")
    has_completed_program: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_program_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    daily_steps: Mapped[list["DailyStep"]] = relationship(
        "DailyStep", back_populates="user", cascade="all, delete-orphan"
    )


class DailyStep(Base):
    __tablename__ = "daily_steps"
    __table_args__ = (
        # Sole guard against two concurrent completions of the same day.
        UniqueConstraint("user_id", "step_date", name="uq_daily_steps_user_date"),
        CheckConstraint("day_number >= 1 AND day_number <= 7", name="ck_daily_steps_day_number"),
        Index("ix_daily_steps_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    # UTC calendar date, YYYY-MM-DD.
    step_date: Mapped[str] = mapped_column(String(10), nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)
    questions_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    answers_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="daily_steps")


class DecisionSession(Base):
    __tablename__ = "decision_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    generated_decision: Mapped[str] = mapped_column(Text, nullable=False)
    committed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
