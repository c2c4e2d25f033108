"""
Ecosystem — OnboardingProgress model (persisted onboarding session snapshot).
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ecosystem.database import Base, JSONType


class OnboardingProgress(Base):
    __tablename__ = "onboarding_progress"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    responses: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False, comment="Ordered step responses"
    )
    flow_type: Mapped[str] = mapped_column(
        String, nullable=False, default="adaptive", comment="reflective / essential / adaptive"
    )
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    current_step: Mapped[str | None] = mapped_column(String, nullable=True)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", back_populates="onboarding_progress")

    def __repr__(self) -> str:
        return (
            f"<OnboardingProgress user={self.user_id} flow={self.flow_type!r} "
            f"completed={self.completed}>"
        )
