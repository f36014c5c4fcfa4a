"""Failure types raised by the generation pipeline.

The HTTP layer in :mod:`imagegen.main` maps each type to a status code and a
caller-facing message; upstream diagnostics stay on the exception for logging.
"""

from __future__ import annotations

from typing import Optional


class ImageGenError(Exception):
    """Base class for every failure the backend knows how to report."""


class InvalidInputError(ImageGenError):
    """The caller sent an unusable request (e.g. an empty prompt)."""


class NotConfiguredError(ImageGenError):
    """A required setting such as the inference API key is missing."""


class LocalRateLimitedError(ImageGenError):
    """The caller identity exhausted its local request quota."""

    def __init__(self, identity: str, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for {identity!r}")
        self.identity = identity
        self.retry_after = retry_after


class InferenceError(ImageGenError):
    """A call to the hosted inference API failed.

    ``status_code`` and ``body`` describe the last upstream response (if any)
    and ``attempts`` counts how many HTTP calls were made before giving up.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: str = "",
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts = attempts

    def __str__(self) -> str:
        details = [super().__str__()]
        if self.status_code is not None:
            details.append(f"status={self.status_code}")
        if self.attempts:
            details.append(f"attempts={self.attempts}")
        if self.body:
            details.append(f"body={self.body[:200]!r}")
        return " ".join(details)


class ModelLoadingError(InferenceError):
    """The upstream model was still warming up after every retry."""

    def __init__(self, message: str, *, estimated_time: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.estimated_time = estimated_time
        # Seconds callers are told to wait at least; set by the service from its settings.
        self.retry_after: Optional[int] = None


class UpstreamRateLimitedError(InferenceError):
    """The inference provider rejected the call with its own quota (HTTP 429)."""


class UpstreamError(InferenceError):
    """The inference provider answered with a non-retryable or persistent error."""


class UpstreamNetworkError(InferenceError):
    """The inference provider could not be reached."""
