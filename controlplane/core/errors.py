"""Domain exception hierarchy.

Services raise these; ``controlplane.main`` maps them to HTTP responses
through ``status_code``. Only ``UpstreamError`` triggers a provider fallback.
"""

from typing import Any


class ControlPlaneError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "detail": self.message, **self.details}


class ValidationError(ControlPlaneError):
    """Missing or malformed input. Not retried."""

    status_code = 400


class AuthError(ControlPlaneError):
    status_code = 401


class NotFoundError(ControlPlaneError):
    status_code = 404


class PromptNotFoundError(NotFoundError):
    pass


class AlreadyExistsError(ControlPlaneError):
    status_code = 409


class ModelNotFoundError(ControlPlaneError):
    status_code = 422


class QuotaExceededError(ControlPlaneError):
    """Tenant is over its monthly token cap. Never falls back."""

    status_code = 429


class UpstreamError(ControlPlaneError):
    """Adapter / network failure talking to an LLM provider."""

    status_code = 502

    def __init__(self, message: str, provider: str | None = None, **details: Any) -> None:
        super().__init__(message, provider=provider, **details)
        self.provider = provider


class FallbackCycleError(ControlPlaneError):
    """A fallback chain led back to a provider already tried for this request."""

    status_code = 502


class NoProviderAvailableError(ControlPlaneError):
    status_code = 503
