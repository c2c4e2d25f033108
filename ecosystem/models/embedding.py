"""
Ecosystem — Embedding model (one vector per user and semantic field).
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ecosystem.database import Base, JSONType


class Embedding(Base):
    __tablename__ = "embeddings"
    __table_args__ = (
        UniqueConstraint("user_id", "field_type", name="uq_embedding_user_field"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    field_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="strengths / needs / goals / values"
    )
    text_content: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Exact source text the vector was built from"
    )
    vector: Mapped[list] = mapped_column(JSONType, nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    model: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", back_populates="embeddings")

    def __repr__(self) -> str:
        return (
            f"<Embedding user={self.user_id} field={self.field_type!r} "
            f"dim={self.dimension}>"
        )
