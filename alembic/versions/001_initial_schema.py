"""Initial schema — all 7 Ecosystem tables.

Revision ID: 001_initial
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String, unique=True, index=True, nullable=False),
        sa.Column("display_name", sa.String, nullable=False),
        sa.Column(
            "onboarding_completed",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_active",
            sa.Boolean,
            server_default="true",
            nullable=False,
        ),
        *_timestamps(),
    )

    # ── 2. profiles ─────────────────────────────────────────────────
    op.create_table(
        "profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("strengths", postgresql.JSONB, nullable=False, comment="Array of strength phrases"),
        sa.Column("needs", postgresql.JSONB, nullable=False, comment="Array of need phrases"),
        sa.Column("current_goal", sa.Text, nullable=True),
        sa.Column("goal_categories", postgresql.JSONB, nullable=False, comment="Selected progress types"),
        sa.Column("shared_values", postgresql.JSONB, nullable=False),
        sa.Column("connection_preferences", postgresql.JSONB, nullable=False),
        sa.Column("availability", sa.String, nullable=True),
        sa.Column("industry", sa.String, nullable=True),
        sa.Column("current_work", sa.Text, nullable=True),
        *_timestamps(),
    )

    # ── 3. embeddings ───────────────────────────────────────────────
    op.create_table(
        "embeddings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "field_type",
            sa.String,
            nullable=False,
            comment="strengths / needs / goals / values",
        ),
        sa.Column(
            "text_content",
            sa.Text,
            nullable=False,
            comment="Exact source text the vector was built from",
        ),
        sa.Column("vector", postgresql.JSONB, nullable=False),
        sa.Column("dimension", sa.Integer, nullable=False),
        sa.Column("model", sa.String, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "field_type", name="uq_embedding_user_field"),
    )

    # ── 4. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_a_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
            comment="User the match was generated for",
        ),
        sa.Column(
            "user_b_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column(
            "match_type",
            sa.String,
            nullable=False,
            comment="need_strength / goal_alignment / values_alignment",
        ),
        sa.Column("similarity_score", sa.Float, nullable=False),
        sa.Column(
            "evidence",
            postgresql.JSONB,
            nullable=False,
            comment="Evidence flags + component breakdown",
        ),
        sa.Column("explanation", sa.Text, nullable=False),
        sa.Column(
            "status",
            sa.String,
            server_default="pending",
            nullable=False,
            index=True,
        ),
        sa.Column(
            "version",
            sa.Integer,
            server_default="1",
            nullable=False,
            comment="Bumped on every status write (compare-and-set)",
        ),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_a_id", "user_b_id", name="uq_match_pair"),
    )

    # ── 5. interactions ─────────────────────────────────────────────
    op.create_table(
        "interactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("interaction_type", sa.String, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "match_id", "user_id", "interaction_type", name="uq_interaction_once"
        ),
    )

    # ── 6. feedback ─────────────────────────────────────────────────
    op.create_table(
        "feedback",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "match_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("matches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("rating", sa.Integer, nullable=False, comment="1-5"),
        sa.Column("outcome", sa.String, nullable=False),
        sa.Column("text", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("match_id", "user_id", name="uq_feedback_match_user"),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_feedback_rating_range"),
    )

    # ── 7. onboarding_progress ──────────────────────────────────────
    op.create_table(
        "onboarding_progress",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column(
            "responses",
            postgresql.JSONB,
            nullable=False,
            comment="Ordered step responses",
        ),
        sa.Column(
            "flow_type",
            sa.String,
            nullable=False,
            comment="reflective / essential / adaptive",
        ),
        sa.Column("engagement_score", sa.Float, nullable=False),
        sa.Column("current_step", sa.String, nullable=True),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column(
            "completed",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_table("onboarding_progress")
    op.drop_table("feedback")
    op.drop_table("interactions")
    op.drop_table("matches")
    op.drop_table("embeddings")
    op.drop_table("profiles")
    op.drop_table("users")
