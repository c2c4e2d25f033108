"""
Ecosystem — EmbeddingProviderClient: the only path to external AI providers

Wraps three outbound integrations behind one injected ``httpx.AsyncClient``:

- **Embeddings** via the Hugging Face inference API (feature extraction on
  a BGE model, fixed dimensionality);
- **Transcription** via an OpenAI-compatible Whisper endpoint;
- **Moderation** via an OpenAI-compatible moderation endpoint.

Every call is bounded by a caller deadline (``asyncio.wait_for``), retried
according to an explicit ``RetryPolicy`` (tenacity), throttled through the
shared ``RateLimiter`` and, for embeddings, de-duplicated through the
shared ``EmbeddingCache``.  Payloads are validated with pydantic at the
boundary; nothing malformed (and never a zero vector) is handed back.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from ecosystem.config import Settings, get_settings
from ecosystem.errors import (
    ContentRejected,
    InvalidResponseShape,
    MissingCredential,
    ProviderUnavailable,
    TranscriptionRejected,
    ValidationError,
)
from ecosystem.schemas.provider import (
    EmbeddingResponse,
    ModerationResponse,
    TranscriptionConstraints,
    TranscriptionResponse,
)
from ecosystem.services.embedding_cache import EmbeddingCache, text_digest
from ecosystem.services.rate_limiter import RateLimiter
from ecosystem.services.retry_policy import (
    RETRYABLE_STATUS_CODES,
    RetryableProviderError,
    RetryPolicy,
)

logger = structlog.get_logger("ecosystem.provider_client")

# Known Whisper hallucinations on silent or near-silent clips.
TRANSCRIPTION_ARTIFACTS: tuple[str, ...] = (
    "[blank_audio]",
    "[unknown]",
    "thank you for watching",
    "subscribe",
)

_EMBEDDING_RATE_KEY = "provider:embedding"
_TRANSCRIPTION_RATE_KEY = "provider:transcription"
_MODERATION_RATE_KEY = "provider:moderation"


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, RetryableProviderError) and exc.status_code == 429


def transcription_confidence(text: str) -> str:
    """Heuristic transcript confidence: long and clean is ``high``."""
    if len(text) > 50 and "..." not in text:
        return "high"
    if len(text) < 20:
        return "low"
    return "medium"


class EmbeddingProviderClient:
    """Client for the embedding, transcription and moderation providers.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient`` owned by the application lifespan.
    settings:
        Optional explicit settings; defaults to ``get_settings()``.
    rate_limiter:
        Optional shared outbound ``RateLimiter``.
    cache:
        Optional shared ``EmbeddingCache``; only consulted when a
        ``user_id`` is supplied to ``embed``.
    retry_policy:
        Optional ``RetryPolicy``; defaults to the one built from settings.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
        rate_limiter: RateLimiter | None = None,
        cache: EmbeddingCache | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._http = http_client
        self._settings = settings or get_settings()
        self._rate_limiter = rate_limiter
        self._cache = cache
        self._retry_policy = retry_policy or RetryPolicy.from_settings(self._settings)

    @property
    def model(self) -> str:
        return self._settings.EMBEDDING_MODEL

    @property
    def dimension(self) -> int:
        return self._settings.EMBEDDING_DIMENSION

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    # ══════════════════════════════════════════════════════════════════
    # Embeddings
    # ══════════════════════════════════════════════════════════════════

    def normalise_text(self, text: str) -> str:
        """Trim and truncate *text* to the model's input window."""
        return (text or "").strip()[: self._settings.EMBEDDING_MAX_CHARS]

    async def embed(
        self,
        text: str,
        field_type: str,
        *,
        user_id: Any | None = None,
        timeout: float | None = None,
    ) -> list[float]:
        """Return the embedding vector for *text*.

        Parameters
        ----------
        text:
            Free text to embed; trimmed and truncated before sending.
        field_type:
            Semantic field the text belongs to (used for cache keys and logs).
        user_id:
            When given, concurrent requests for the same user and field are
            de-duplicated through the shared cache.
        timeout:
            Caller deadline in seconds; defaults to
            ``PROVIDER_TIMEOUT_SECONDS``.

        Returns
        -------
        list[float]
            Exactly ``EMBEDDING_DIMENSION`` finite floats.

        Raises
        ------
        MissingCredential
            No provider key is configured (raised before any I/O).
        ValidationError
            The text is empty after trimming.
        ProviderUnavailable
            Network failure, non-2xx status after retries, or timeout.
        InvalidResponseShape
            The provider answered with a malformed payload.
        """
        if not self._settings.HUGGINGFACE_API_KEY:
            raise MissingCredential(
                "HUGGINGFACE_API_KEY is not configured",
                details={"provider": "embedding"},
            )

        normalised = self.normalise_text(text)
        if not normalised:
            raise ValidationError(
                "Cannot embed empty text",
                user_message="Please provide some text to analyse.",
                details={"field_type": str(field_type)},
            )

        log = logger.bind(
            field_type=str(field_type),
            user_id=str(user_id) if user_id is not None else None,
        )
        log.debug("embedding_request_start", chars=len(normalised))

        async def _fetch() -> list[float]:
            return await self._request_embedding(normalised)

        if self._cache is not None and user_id is not None:
            pending: Awaitable[list[float]] = self._cache.get_or_fetch(
                str(user_id),
                str(field_type),
                text_digest(self.model, normalised),
                _fetch,
            )
        else:
            pending = _fetch()

        vector = await self._with_deadline(pending, timeout, operation="embedding")
        log.debug("embedding_request_complete", dimension=len(vector))
        return vector

    async def _request_embedding(self, text: str) -> list[float]:
        url = f"{self._settings.EMBEDDING_API_BASE}/models/{self.model}"
        headers = {"Authorization": f"Bearer {self._settings.HUGGINGFACE_API_KEY}"}
        payload = {"inputs": text, "options": {"wait_for_model": True}}

        response = await self._send_with_retry(
            lambda: self._http.post(url, json=payload, headers=headers),
            rate_key=_EMBEDDING_RATE_KEY,
            operation="embedding",
        )
        return self._parse_embedding(response)

    def _parse_embedding(self, response: httpx.Response) -> list[float]:
        try:
            body = response.json()
        except ValueError as exc:
            raise InvalidResponseShape(
                "Embedding provider returned non-JSON body",
                details={"operation": "embedding"},
            ) from exc

        try:
            parsed = EmbeddingResponse.model_validate(body)
        except PydanticValidationError as exc:
            raise InvalidResponseShape(
                "Embedding provider returned an unexpected payload",
                details={"operation": "embedding", "errors": exc.error_count()},
            ) from exc

        vector = [float(v) for v in parsed.first]
        if len(vector) != self.dimension:
            raise InvalidResponseShape(
                f"Expected {self.dimension} dimensions, got {len(vector)}",
                details={"expected": self.dimension, "actual": len(vector)},
            )
        return vector

    # ══════════════════════════════════════════════════════════════════
    # Transcription
    # ══════════════════════════════════════════════════════════════════

    def validate_audio(self, audio: bytes, constraints: TranscriptionConstraints) -> None:
        """Reject audio that must never reach the provider."""
        settings = self._settings
        if not audio:
            raise ValidationError(
                "Audio payload is empty",
                user_message="No audio was received. Please try recording again.",
                details={"reason": "empty_audio"},
            )
        duration = constraints.duration_seconds
        if not settings.AUDIO_MIN_SECONDS <= duration <= settings.AUDIO_MAX_SECONDS:
            raise ValidationError(
                f"Audio duration {duration:.1f}s outside "
                f"[{settings.AUDIO_MIN_SECONDS}, {settings.AUDIO_MAX_SECONDS}]",
                user_message=(
                    f"Recordings must be between {settings.AUDIO_MIN_SECONDS:g} and "
                    f"{settings.AUDIO_MAX_SECONDS:g} seconds long."
                ),
                details={"reason": "duration_out_of_bounds", "duration_seconds": duration},
            )
        if len(audio) > settings.AUDIO_MAX_BYTES:
            raise ValidationError(
                f"Audio payload of {len(audio)} bytes exceeds {settings.AUDIO_MAX_BYTES}",
                user_message="Audio file too large. Please record a shorter clip.",
                details={"reason": "payload_too_large", "bytes": len(audio)},
            )

    async def transcribe(
        self,
        audio: bytes,
        constraints: TranscriptionConstraints,
        *,
        timeout: float | None = None,
    ) -> TranscriptionResponse:
        """Transcribe a short voice answer and moderate the result.

        Audio is validated before any provider call.  The transcript is
        moderated (an outage fails the call) and then checked for length
        and known silence artifacts.
        """
        self.validate_audio(audio, constraints)
        if not self._settings.OPENAI_API_KEY:
            raise MissingCredential(
                "OPENAI_API_KEY is not configured",
                details={"provider": "transcription"},
            )

        return await self._with_deadline(
            self._transcribe_validated(audio, constraints),
            timeout,
            operation="transcription",
        )

    async def _transcribe_validated(
        self, audio: bytes, constraints: TranscriptionConstraints
    ) -> TranscriptionResponse:
        settings = self._settings
        log = logger.bind(duration_seconds=constraints.duration_seconds, bytes=len(audio))
        log.info("transcription_start")

        headers = {"Authorization": f"Bearer {settings.OPENAI_API_KEY}"}
        data = {
            "model": settings.TRANSCRIPTION_MODEL,
            "language": "en",
            "response_format": "text",
            "temperature": "0.2",
        }

        def _post() -> Awaitable[httpx.Response]:
            files = {"file": (constraints.filename, audio, constraints.mime_type)}
            return self._http.post(
                settings.TRANSCRIPTION_API_URL, data=data, files=files, headers=headers
            )

        response = await self._send_with_retry(
            _post,
            rate_key=_TRANSCRIPTION_RATE_KEY,
            operation="transcription",
            predicate=_is_rate_limited,
        )
        text = response.text.strip()
        if not text:
            raise TranscriptionRejected(
                "Transcription returned empty text",
                user_message="No speech detected. Please try speaking more clearly.",
                details={"reason": "empty_transcript"},
            )

        await self.moderate(text)

        lowered = text.lower()
        if len(text) < settings.TRANSCRIPTION_MIN_CHARS or any(
            artifact in lowered for artifact in TRANSCRIPTION_ARTIFACTS
        ):
            log.warning("transcription_rejected", chars=len(text))
            raise TranscriptionRejected(
                "Transcript too short or contains silence artifacts",
                details={"reason": "low_quality_transcript"},
            )

        result = TranscriptionResponse(
            text=text,
            confidence=transcription_confidence(text),
            duration_seconds=constraints.duration_seconds,
        )
        log.info("transcription_complete", chars=len(text), confidence=result.confidence)
        return result

    async def moderate(self, text: str) -> None:
        """Raise ``ContentRejected`` when the moderation provider flags *text*."""
        settings = self._settings
        headers = {"Authorization": f"Bearer {settings.OPENAI_API_KEY}"}
        response = await self._send_with_retry(
            lambda: self._http.post(
                settings.MODERATION_API_URL, json={"input": text}, headers=headers
            ),
            rate_key=_MODERATION_RATE_KEY,
            operation="moderation",
            predicate=_is_rate_limited,
        )
        try:
            parsed = ModerationResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise InvalidResponseShape(
                "Moderation provider returned an unexpected payload",
                details={"operation": "moderation"},
            ) from exc

        if parsed.flagged:
            flagged = [name for name, hit in parsed.results[0].categories.items() if hit]
            logger.warning("moderation_flagged", categories=flagged)
            raise ContentRejected(
                "Transcript flagged by moderation",
                details={"categories": flagged},
            )

    # ══════════════════════════════════════════════════════════════════
    # Shared plumbing
    # ══════════════════════════════════════════════════════════════════

    async def _with_deadline(self, awaitable: Awaitable, timeout: float | None, operation: str):
        deadline = timeout if timeout is not None else self._settings.PROVIDER_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(awaitable, timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.warning("provider_timeout", operation=operation, timeout=deadline)
            raise ProviderUnavailable(
                f"{operation} timed out after {deadline}s",
                details={"operation": operation, "reason": "timeout"},
            ) from exc

    async def _send_with_retry(
        self,
        send: Callable[[], Awaitable[httpx.Response]],
        *,
        rate_key: str,
        operation: str,
        predicate: Callable[[BaseException], bool] | None = None,
    ) -> httpx.Response:
        """Send one logical request, retrying transient failures.

        Returns the first 2xx response.  Exhausted retries and
        non-retryable failures surface as ``ProviderUnavailable``.
        """
        retrying = (
            self._retry_policy.retrying(predicate)
            if predicate is not None
            else self._retry_policy.retrying()
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    logger.debug(
                        "provider_call_attempt",
                        operation=operation,
                        attempt_number=attempt_number,
                    )
                    response = await self._throttled(send, rate_key)
                    if response.status_code in RETRYABLE_STATUS_CODES:
                        raise RetryableProviderError(response.status_code, response.text[:200])
                    if not response.is_success:
                        raise ProviderUnavailable(
                            f"{operation} provider returned HTTP {response.status_code}",
                            details={"operation": operation, "status": response.status_code},
                        )
                    return response
        except RetryableProviderError as exc:
            logger.error(
                "provider_retry_exhausted",
                operation=operation,
                status=exc.status_code,
                attempts=self._retry_policy.max_attempts,
            )
            raise ProviderUnavailable(
                f"{operation} provider still returning HTTP {exc.status_code}",
                details={"operation": operation, "status": exc.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("provider_transport_error", operation=operation, error=str(exc))
            raise ProviderUnavailable(
                f"{operation} provider unreachable: {exc}",
                details={"operation": operation, "reason": type(exc).__name__},
            ) from exc
        raise ProviderUnavailable(f"{operation} provider gave no response")

    async def _throttled(
        self, send: Callable[[], Awaitable[httpx.Response]], rate_key: str
    ) -> httpx.Response:
        if self._rate_limiter is None:
            return await send()
        await self._rate_limiter.wait(rate_key)
        async with self._rate_limiter.slot():
            return await send()

    # ══════════════════════════════════════════════════════════════════
    # Introspection
    # ══════════════════════════════════════════════════════════════════

    def configuration_status(self) -> dict:
        """Credential and endpoint status for the health validator."""
        settings = self._settings
        return {
            "embedding_key_configured": bool(settings.HUGGINGFACE_API_KEY),
            "transcription_key_configured": bool(settings.OPENAI_API_KEY),
            "embedding_model": settings.EMBEDDING_MODEL,
            "embedding_dimension": settings.EMBEDDING_DIMENSION,
            "retry_policy": self._retry_policy.describe(),
        }
