"""
Ecosystem — Match and Interaction models.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ecosystem.database import Base, JSONType


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("user_a_id", "user_b_id", name="uq_match_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_a_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="User the match was generated for",
    )
    user_b_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    match_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="need_strength / goal_alignment / values_alignment"
    )
    similarity_score: Mapped[float] = mapped_column(Float, nullable=False)
    evidence: Mapped[dict] = mapped_column(
        JSONType, nullable=False, comment="Evidence flags + component breakdown"
    )
    explanation: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending", server_default="pending", index=True
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1",
        comment="Bumped on every status write (compare-and-set)",
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    user_a: Mapped["User"] = relationship(
        "User", foreign_keys=[user_a_id], lazy="selectin"
    )
    user_b: Mapped["User"] = relationship(
        "User", foreign_keys=[user_b_id], lazy="selectin"
    )
    feedback: Mapped[list["Feedback"]] = relationship(
        "Feedback", back_populates="match", cascade="all, delete-orphan"
    )

    def involves(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.user_a_id, self.user_b_id)

    def other_user_id(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.user_b_id if self.user_a_id == user_id else self.user_a_id

    def __repr__(self) -> str:
        return (
            f"<Match {self.user_a_id} -> {self.user_b_id} "
            f"score={self.similarity_score:.3f} status={self.status!r}>"
        )


class Interaction(Base):
    """Append-only analytics record written when a match is accepted."""

    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint(
            "match_id", "user_id", "interaction_type", name="uq_interaction_once"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("matches.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    interaction_type: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Interaction {self.interaction_type!r} match={self.match_id}>"
