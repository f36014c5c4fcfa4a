from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..prompts import ModelFamily


@dataclass
class ImageResult:
    """Raw image bytes returned by the inference API."""

    content: bytes
    content_type: str = "image/jpeg"


class ImageGenerationClient(ABC):
    """Abstract interface for an image generation client.

    Implementations raise subclasses of :class:`imagegen.errors.InferenceError`
    and never leak transport exceptions.
    """

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        composed_prompt: str,
        family: ModelFamily = ModelFamily.PRIMARY,
    ) -> ImageResult:
        """Generate an image for an already composed prompt."""

    async def aclose(self) -> None:  # pragma: no cover - interface default
        """Release any held network resources."""
