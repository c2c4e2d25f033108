"""
Ecosystem — EmbeddingStore: persistent per-user semantic vectors

Owns the ``embeddings`` table.  One row per ``(user_id, field_type)`` holds
the vector together with the exact source text it was built from, which is
what makes staleness detectable: a row is fresh only while its
``text_content`` still equals the profile's current source text.

Rows are written only with vectors that came back from the provider client
and passed the dimensionality check; a failed refresh writes nothing.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Iterable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.config import get_settings
from ecosystem.errors import ValidationError
from ecosystem.models.embedding import Embedding
from ecosystem.models.enums import FieldType

logger = structlog.get_logger("ecosystem.embedding_store")

FIELD_TYPES: tuple[str, ...] = tuple(f.value for f in FieldType)


def _join(items: Iterable[Any] | None) -> str:
    return ", ".join(str(i).strip() for i in (items or []) if str(i).strip())


def source_texts(profile: Any) -> dict[str, str]:
    """Build the text embedded for each semantic field of *profile*.

    Strengths, needs and values are comma-joined lists; goals combine the
    free-text current goal with the selected goal categories.  Fields with
    no content map to an empty string.
    """
    goal_parts = [
        (getattr(profile, "current_goal", None) or "").strip(),
        _join(getattr(profile, "goal_categories", None)),
    ]
    return {
        FieldType.STRENGTHS.value: _join(getattr(profile, "strengths", None)),
        FieldType.NEEDS.value: _join(getattr(profile, "needs", None)),
        FieldType.GOALS.value: ". ".join(p for p in goal_parts if p),
        FieldType.VALUES.value: _join(getattr(profile, "shared_values", None)),
    }


def _as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class EmbeddingStore:
    """Read/write access to stored embeddings."""

    def __init__(self) -> None:
        settings = get_settings()
        self.dimension: int = settings.EMBEDDING_DIMENSION
        self.model: str = settings.EMBEDDING_MODEL

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_user_embeddings(
        self, user_id: Any, db_session: AsyncSession
    ) -> dict[str, Embedding]:
        stmt = select(Embedding).where(Embedding.user_id == _as_uuid(user_id))
        result = await db_session.execute(stmt)
        return {row.field_type: row for row in result.scalars().all()}

    async def get_embeddings_for_users(
        self, user_ids: Iterable[Any], db_session: AsyncSession
    ) -> dict[uuid.UUID, dict[str, list[float]]]:
        """Fetch vectors for many users in a single query.

        Returns ``{user_id: {field_type: vector}}``; users without any
        stored embedding are absent from the mapping.
        """
        ids = [_as_uuid(u) for u in user_ids]
        if not ids:
            return {}
        stmt = select(Embedding).where(Embedding.user_id.in_(ids))
        result = await db_session.execute(stmt)

        vectors: dict[uuid.UUID, dict[str, list[float]]] = {}
        for row in result.scalars().all():
            vectors.setdefault(row.user_id, {})[row.field_type] = list(row.vector)
        return vectors

    async def is_fresh(
        self,
        user_id: Any,
        field_type: str,
        source_text: str,
        db_session: AsyncSession,
    ) -> bool:
        """True when a stored vector exists for exactly *source_text*."""
        stmt = select(Embedding.text_content).where(
            Embedding.user_id == _as_uuid(user_id),
            Embedding.field_type == str(field_type),
        )
        stored = (await db_session.execute(stmt)).scalar_one_or_none()
        return stored is not None and stored == source_text

    async def stale_fields(
        self, user_id: Any, profile: Any, db_session: AsyncSession
    ) -> list[str]:
        """Fields with non-empty source text whose stored vector is missing
        or was built from different text."""
        existing = await self.get_user_embeddings(user_id, db_session)
        stale = []
        for field_type, text in source_texts(profile).items():
            if not text:
                continue
            row = existing.get(field_type)
            if row is None or row.text_content != text:
                stale.append(field_type)
        return stale

    # ── Writes ────────────────────────────────────────────────────────────

    async def upsert(
        self,
        user_id: Any,
        field_type: str,
        text: str,
        vector: list[float],
        db_session: AsyncSession,
        model: str | None = None,
    ) -> Embedding:
        """Insert or replace the vector for ``(user_id, field_type)``."""
        if field_type not in FIELD_TYPES:
            raise ValidationError(
                f"Unknown field type {field_type!r}",
                details={"field_type": field_type},
            )
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding for {field_type} has {len(vector)} dimensions, "
                f"expected {self.dimension}",
                details={"expected": self.dimension, "actual": len(vector)},
            )

        uid = _as_uuid(user_id)
        stmt = select(Embedding).where(
            Embedding.user_id == uid, Embedding.field_type == field_type
        )
        row = (await db_session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = Embedding(user_id=uid, field_type=field_type)
            db_session.add(row)

        row.text_content = text
        row.vector = [float(v) for v in vector]
        row.dimension = len(vector)
        row.model = model or self.model
        await db_session.flush()

        logger.debug("embedding_upserted", user_id=str(uid), field_type=field_type)
        return row

    async def delete_fields(
        self, user_id: Any, field_types: Iterable[str], db_session: AsyncSession
    ) -> int:
        fields = list(field_types)
        if not fields:
            return 0
        stmt = delete(Embedding).where(
            Embedding.user_id == _as_uuid(user_id),
            Embedding.field_type.in_(fields),
        )
        result = await db_session.execute(stmt)
        return result.rowcount or 0

    async def refresh_user_embeddings(
        self,
        user_id: Any,
        profile: Any,
        client: Any,
        db_session: AsyncSession,
    ) -> dict:
        """Re-embed every stale field of *profile* and persist the results.

        All stale fields are embedded concurrently.  If any of them fails,
        the first error is raised before a single row is written, so the
        caller's transaction never holds a partial refresh.

        Parameters
        ----------
        user_id:
            Owner of the profile.
        profile:
            Object exposing the profile attributes read by ``source_texts``.
        client:
            ``EmbeddingProviderClient`` (or anything with the same ``embed``).
        db_session:
            Active SQLAlchemy async session.

        Returns
        -------
        dict
            ``refreshed`` / ``removed`` / ``unchanged`` field lists.
        """
        log = logger.bind(user_id=str(user_id))
        texts = source_texts(profile)
        stale = await self.stale_fields(user_id, profile, db_session)
        empty = [field for field, text in texts.items() if not text]

        log.info("embedding_refresh_start", stale=stale, empty=empty)

        results = await asyncio.gather(
            *(
                client.embed(texts[field], field, user_id=str(user_id))
                for field in stale
            ),
            return_exceptions=True,
        )
        for field, outcome in zip(stale, results):
            if isinstance(outcome, BaseException):
                log.error(
                    "embedding_refresh_failed",
                    field_type=field,
                    error=type(outcome).__name__,
                )
                raise outcome

        for field, vector in zip(stale, results):
            await self.upsert(user_id, field, texts[field], vector, db_session)

        removed = await self.delete_fields(user_id, empty, db_session)

        summary = {
            "refreshed": stale,
            "removed": empty if removed else [],
            "unchanged": [
                f for f in FIELD_TYPES if f not in stale and f not in empty
            ],
        }
        log.info("embedding_refresh_complete", **summary)
        return summary
