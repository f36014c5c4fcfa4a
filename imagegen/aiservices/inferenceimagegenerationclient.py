"""Client for a hosted text-to-image inference API (Hugging Face Inference API style)."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from ..config import Settings, get_settings
from ..errors import (
    InferenceError,
    ModelLoadingError,
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRateLimitedError,
)
from ..prompts import ModelFamily, get_generation_parameters
from .imagegenerationclient import ImageGenerationClient, ImageResult

logger = logging.getLogger(__name__)

_MAGIC_NUMBERS = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)
_BODY_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay retry schedule: one attempt plus ``max_retries`` retries."""

    max_retries: int = 3
    delay_seconds: float = 2.0

    @property
    def max_attempts(self) -> int:
        return max(1, self.max_retries + 1)


def sniff_content_type(content: bytes, declared: str = "") -> str:
    for magic, content_type in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return content_type
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    declared = declared.split(";")[0].strip().lower()
    if declared.startswith("image/"):
        return declared
    return "image/jpeg"


def _parse_error_envelope(content: bytes) -> Optional[Dict[str, Any]]:
    """First decode phase: return the JSON body as an error envelope, or None for binary data."""
    if not content:
        return None
    try:
        parsed = json.loads(content)
    except ValueError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return {"error": parsed}


def _excerpt(content: bytes) -> str:
    return content[:_BODY_EXCERPT_CHARS].decode("utf-8", errors="replace")


def decode_response(response: httpx.Response) -> Union[ImageResult, Dict[str, Any]]:
    """Split an upstream response into an image payload or an error envelope.

    The upstream does not set a reliable content type on errors, so the body is
    first decoded as JSON. Only when that fails and the status is 2xx are the
    bytes treated as an image.
    """
    envelope = _parse_error_envelope(response.content)
    if envelope is None and response.is_success and response.content:
        content_type = sniff_content_type(response.content, response.headers.get("content-type", ""))
        return ImageResult(content=response.content, content_type=content_type)
    if envelope is None:
        envelope = {"error": _excerpt(response.content) or "empty response body"}
    return envelope


def _estimated_time(envelope: Dict[str, Any]) -> Optional[float]:
    value = envelope.get("estimated_time")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class InferenceImageGenerationClient(ImageGenerationClient):
    """Image generation through a remote inference endpoint.

    Every attempt sends a fresh random seed, so a retry produces a different
    image than the failed attempt would have. 503 responses and transient
    failures are retried on a fixed delay; 429 is surfaced immediately. When a
    backup API key is configured, a failed primary cycle (other than a model
    that is still loading) is followed by one full cycle on the backup key.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.max_retries,
            delay_seconds=self.settings.retry_delay_seconds,
        )
        self._api_key = self.settings.inference_api_key.get_secret_value()
        self._backup_api_key = self.settings.inference_backup_api_key.get_secret_value()
        self._base_url = self.settings.inference_api_base_url.rstrip("/")
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=self.settings.inference_timeout_seconds,
            transport=transport,
        )

    @property
    def has_backup_credential(self) -> bool:
        return bool(self._backup_api_key)

    async def generate(
        self,
        model_id: str,
        composed_prompt: str,
        family: ModelFamily = ModelFamily.PRIMARY,
    ) -> ImageResult:
        try:
            return await self._run_cycle(self._api_key, model_id, composed_prompt, family)
        except ModelLoadingError:
            raise
        except InferenceError as primary_error:
            if not self._backup_api_key:
                raise
            logger.warning("Primary credential failed for %s (%s); trying backup credential", model_id, primary_error)
            try:
                return await self._run_cycle(self._backup_api_key, model_id, composed_prompt, family)
            except InferenceError as backup_error:
                logger.error("Backup credential failed for %s: %s", model_id, backup_error)
                raise primary_error from backup_error

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _run_cycle(
        self,
        api_key: str,
        model_id: str,
        composed_prompt: str,
        family: ModelFamily,
    ) -> ImageResult:
        policy = self.retry_policy
        url = f"{self._base_url}/{model_id}"
        headers = {"Authorization": f"Bearer {api_key}"}
        last_error: InferenceError = UpstreamError("No inference attempt was made")

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                await self._sleep(policy.delay_seconds)

            payload = {
                "inputs": composed_prompt,
                "parameters": get_generation_parameters(family),
            }
            try:
                response = await self._client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                logger.warning(
                    "Inference request to %s failed (%s), attempt %s/%s",
                    model_id, exc, attempt, policy.max_attempts,
                )
                last_error = UpstreamNetworkError(
                    f"Could not reach inference API: {exc.__class__.__name__}",
                    attempts=attempt,
                )
                continue

            if response.status_code == 429:
                raise UpstreamRateLimitedError(
                    "Inference API rate limit exceeded",
                    status_code=response.status_code,
                    body=_excerpt(response.content),
                    attempts=attempt,
                )

            outcome = decode_response(response)
            if isinstance(outcome, ImageResult):
                if attempt > 1:
                    logger.info("Inference for %s succeeded on attempt %s", model_id, attempt)
                return outcome

            if response.status_code == 503:
                logger.info("Model %s warming up, attempt %s/%s", model_id, attempt, policy.max_attempts)
                last_error = ModelLoadingError(
                    "Model is still loading",
                    estimated_time=_estimated_time(outcome),
                    status_code=response.status_code,
                    body=_excerpt(response.content),
                    attempts=attempt,
                )
            else:
                logger.warning(
                    "Inference API returned %s for %s, attempt %s/%s: %s",
                    response.status_code, model_id, attempt, policy.max_attempts, outcome.get("error"),
                )
                last_error = UpstreamError(
                    "Inference API returned an error",
                    status_code=response.status_code,
                    body=_excerpt(response.content),
                    attempts=attempt,
                )

        raise last_error
