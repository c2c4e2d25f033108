"""
Ecosystem — Profile model (free-text and multi-select onboarding answers).
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ecosystem.database import Base, JSONType


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    strengths: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False, comment="Array of strength phrases"
    )
    needs: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False, comment="Array of need phrases"
    )
    current_goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    goal_categories: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False, comment="Selected progress types"
    )
    shared_values: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False
    )
    connection_preferences: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False
    )
    availability: Mapped[str | None] = mapped_column(String, nullable=True)
    industry: Mapped[str | None] = mapped_column(String, nullable=True)
    current_work: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", back_populates="profile")

    def __repr__(self) -> str:
        return f"<Profile user={self.user_id} industry={self.industry!r}>"
