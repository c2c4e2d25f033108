"""
Ecosystem — Shared API dependencies

Identity comes from the ``X-User-Id`` header set by the upstream auth
gateway.  Long-lived clients (provider client, rate limiters) live on
``app.state`` and are created in the application lifespan.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ecosystem.database import get_db
from ecosystem.errors import AuthenticationError, AuthorizationError, ProviderUnavailable
from ecosystem.models.user import User
from ecosystem.services.provider_client import EmbeddingProviderClient
from ecosystem.services.rate_limiter import RateLimiter

logger = structlog.get_logger("ecosystem.api.deps")


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Load the active user named by the gateway header, or ``None``."""
    if not x_user_id:
        return None
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        logger.warning("current_user_header_invalid", header=x_user_id)
        return None
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


async def require_user(user: User | None = Depends(get_current_user)) -> User:
    if user is None:
        raise AuthenticationError("Missing or unknown X-User-Id header")
    return user


def ensure_same_user(user: User, requested_id: Any) -> None:
    """Reject requests that act on behalf of another user."""
    if str(user.id) != str(requested_id):
        logger.warning(
            "cross_user_request_rejected",
            user_id=str(user.id),
            requested_user_id=str(requested_id),
        )
        raise AuthorizationError(
            f"User {user.id} cannot act for {requested_id}",
            details={"user_id": str(requested_id)},
        )


def get_provider_client(request: Request) -> EmbeddingProviderClient:
    client = getattr(request.app.state, "provider_client", None)
    if client is None:
        raise ProviderUnavailable("Provider client not initialised")
    return client


def get_user_rate_limiter(request: Request) -> RateLimiter | None:
    return getattr(request.app.state, "user_rate_limiter", None)


async def enforce_user_quota(
    user: User = Depends(require_user),
    limiter: RateLimiter | None = Depends(get_user_rate_limiter),
) -> User:
    """Per-user request quota; raises ``RateLimitError`` when exhausted."""
    if limiter is not None:
        await limiter.check(f"user:{user.id}")
    return user
