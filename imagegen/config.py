from functools import lru_cache
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the image generation backend."""

    #----------------------------------------------------------
    # Inference API settings
    #----------------------------------------------------------
    inference_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token for the hosted inference API. Generation is refused when empty.",
    )

    inference_backup_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Optional secondary token tried once after the primary token fails.",
    )

    inference_api_base_url: str = Field(
        default="https://api-inference.huggingface.co/models",
        description="Base URL of the inference endpoint; the model id is appended as a path segment.",
    )

    inference_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Per-attempt HTTP timeout for calls to the inference API.",
    )

    #----------------------------------------------------------
    # Model settings
    #----------------------------------------------------------
    primary_model_id: str = Field(
        default="SG161222/Realistic_Vision_V5.1_noVAE",
        description="Hosted model used for the realistic (primary) family.",
    )
    alternate_model_id: str = Field(
        default="Linaqruf/anything-v3.0",
        description="Hosted model used for the anime (alternate) family.",
    )

    #----------------------------------------------------------
    # Retry settings
    #----------------------------------------------------------
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first attempt before a failure is surfaced.",
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Fixed delay between attempts.",
    )
    model_loading_wait_seconds: int = Field(
        default=20,
        ge=0,
        description="Minimum wait suggested to callers when the upstream model is still loading.",
    )

    #----------------------------------------------------------
    # Rate limiting settings
    #----------------------------------------------------------
    rate_limit_window_seconds: int = Field(
        default=60,
        ge=1,
        description="Length of the sliding rate limit window in whole seconds.",
    )
    rate_limit_max_requests: int = Field(
        default=5,
        ge=1,
        description="Requests admitted per identity within one window.",
    )

    #----------------------------------------------------------
    # Storage settings
    #----------------------------------------------------------
    database_path: str = Field(
        default="",
        description="SQLite file for generation history. Empty means a file next to the storage module.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
