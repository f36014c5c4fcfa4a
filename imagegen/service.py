"""Request handling for image generation: validation, rate limiting and dispatch."""

from __future__ import annotations

import base64
import logging
from typing import Optional

from fastapi import Request

from .aiservices.imagegenerationclient import ImageGenerationClient, ImageResult
from .aiservices.inferenceimagegenerationclient import InferenceImageGenerationClient
from .config import Settings, get_settings
from .errors import InvalidInputError, LocalRateLimitedError, ModelLoadingError, NotConfiguredError
from .prompts import get_composed_prompt, get_model_id, resolve_model_family
from .ratelimiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


def encode_data_url(result: ImageResult) -> str:
    encoded = base64.b64encode(result.content).decode("ascii")
    return f"data:{result.content_type};base64,{encoded}"


class ImageGenerationService:
    """High-level orchestrator for one generation request.

    Runs ``Received -> Validated -> RateChecked -> Generating`` and either
    returns the image as a data URL or raises an
    :class:`imagegen.errors.ImageGenError` for the HTTP layer to map.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[ImageGenerationClient] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client or InferenceImageGenerationClient(self.settings)
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter.from_settings(self.settings)

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    async def generate_image(self, prompt: Optional[str], model: Optional[str], identity: Optional[str]) -> str:
        prompt = (prompt or "").strip()
        if not prompt:
            raise InvalidInputError("Prompt is required")

        try:
            family = resolve_model_family(model)
        except ValueError as exc:
            raise InvalidInputError(f"Unknown model '{model}'") from exc

        if not self.settings.inference_api_key.get_secret_value():
            raise NotConfiguredError("Inference API key not configured")

        identity = self._rate_limiter.normalise_identity(identity)
        if not self._rate_limiter.check_and_record(identity):
            retry_after = self._rate_limiter.retry_after(identity)
            logger.info("Rate limit hit for %s, retry in %.1fs", identity, retry_after)
            raise LocalRateLimitedError(identity, retry_after)

        model_id = get_model_id(family, self.settings)
        composed_prompt = get_composed_prompt(family, prompt)
        logger.info("Generating image with %s for %s", model_id, identity)

        try:
            result = await self._client.generate(model_id, composed_prompt, family)
        except ModelLoadingError as exc:
            exc.retry_after = self.settings.model_loading_wait_seconds
            raise
        return encode_data_url(result)

    async def aclose(self) -> None:
        await self._client.aclose()


def get_image_generation_service(request: Request) -> ImageGenerationService:
    """Return the service built once by the application lifespan."""
    return request.app.state.image_generation_service
