import random
from enum import Enum
from typing import Any, Dict

from .config import Settings


class ModelFamily(str, Enum):
    PRIMARY = "primary"
    ALTERNATE = "alternate"


# Names the original web client sent before the families were renamed.
MODEL_ALIASES = {
    "openjourney": ModelFamily.PRIMARY,
    "waifu": ModelFamily.ALTERNATE,
}

NEGATIVE_PROMPT = (
    "blurry, bad quality, worst quality, jpeg artifacts, text, watermark, nsfw, nude, low quality"
)

MAX_SEED = 1_000_000

_GENERATION_PARAMETERS: Dict[ModelFamily, Dict[str, Any]] = {
    ModelFamily.PRIMARY: {
        "negative_prompt": NEGATIVE_PROMPT,
        "num_inference_steps": 20,
        "guidance_scale": 7.0,
        "width": 512,
        "height": 512,
    },
    ModelFamily.ALTERNATE: {
        "negative_prompt": NEGATIVE_PROMPT,
        "num_inference_steps": 20,
        "guidance_scale": 7.0,
        "width": 512,
        "height": 512,
    },
}


def resolve_model_family(value: Any) -> ModelFamily:
    """Map a request's ``model`` field onto a :class:`ModelFamily`.

    ``None`` selects the primary family. Raises ``ValueError`` for unknown names.
    """
    if value is None:
        return ModelFamily.PRIMARY
    if isinstance(value, ModelFamily):
        return value
    name = str(value).strip().lower()
    if not name:
        return ModelFamily.PRIMARY
    if name in MODEL_ALIASES:
        return MODEL_ALIASES[name]
    return ModelFamily(name)


def get_model_id(family: ModelFamily, settings: Settings) -> str:
    if family is ModelFamily.ALTERNATE:
        return settings.alternate_model_id
    return settings.primary_model_id


def get_composed_prompt(family: ModelFamily, prompt: str) -> str:
    prompt = prompt.strip()
    if family is ModelFamily.ALTERNATE:
        return f"anime artwork, anime style art, high quality anime, {prompt}, masterpiece, highly detailed"
    return f"{prompt}, high quality, masterpiece, highly detailed, realistic"


def get_generation_parameters(family: ModelFamily) -> Dict[str, Any]:
    """Return the request parameters for one attempt, including a fresh seed."""
    parameters = dict(_GENERATION_PARAMETERS[family])
    parameters["seed"] = random.randrange(MAX_SEED)
    return parameters
