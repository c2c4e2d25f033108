"""
Ecosystem — RetryPolicy: explicit outbound retry configuration

Wraps the tenacity primitives used for every external-provider call so the
number of attempts and the backoff curve are configuration rather than
hard-coded literals scattered across call sites.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from ecosystem.config import Settings, get_settings

# Upstream statuses that signal a transient condition worth retrying.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 503})


class RetryableProviderError(Exception):
    """Raised inside a retry loop for a transient provider response."""

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"Provider returned transient status {status_code}")
        self.status_code = status_code
        self.body = body


def is_retryable(exc: BaseException) -> bool:
    """Return True for transient upstream failures.

    Transient means a 429/503 response (surfaced as
    ``RetryableProviderError``) or a transport-level connection problem.
    Timeouts are *not* retried here; the caller deadline owns them.
    """
    if isinstance(exc, RetryableProviderError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError)):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one class of outbound call.

    ``max_retries`` counts retries *after* the first attempt, so a policy
    with ``max_retries=2`` makes at most three requests.
    """

    max_retries: int = 2
    backoff_base: float = 1.0
    backoff_max: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.PROVIDER_MAX_RETRIES,
            backoff_base=settings.PROVIDER_BACKOFF_BASE,
            backoff_max=settings.PROVIDER_BACKOFF_MAX,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def retrying(
        self, predicate: Callable[[BaseException], bool] = is_retryable
    ) -> AsyncRetrying:
        """Build a fresh ``AsyncRetrying`` controller for one logical call."""
        if self.backoff_base <= 0:
            wait = wait_none()
        else:
            wait = wait_exponential(
                multiplier=self.backoff_base,
                min=self.backoff_base,
                max=self.backoff_max,
                exp_base=2,
            )
        return AsyncRetrying(
            retry=retry_if_exception(predicate),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            reraise=True,
        )

    def describe(self) -> dict:
        return {
            "max_retries": self.max_retries,
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "backoff_max": self.backoff_max,
        }
