"""Custom exception types."""

from __future__ import annotations

from typing import Literal

CLIErrorType = Literal["rate_limit", "auth_failed", "network", "unknown"]


class DevarkError(Exception):
    """Base class for all errors raised by the copilot core."""


class ConfigurationError(DevarkError):
    """Raised when settings are missing, malformed or name an unknown provider."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])


class ProviderRegistryError(DevarkError):
    """Raised for duplicate registrations, unknown ids and factory failures."""


class ProviderUnavailableError(DevarkError):
    """Raised when a provider cannot satisfy the request."""

    def __init__(self, provider_id: str, message: str = "Provider unavailable") -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.message = message


class AuthenticationRequiredError(ProviderUnavailableError):
    """Raised when a provider requires credentials that are missing or rejected."""

    def __init__(self, provider_id: str, message: str = "Provider credentials missing") -> None:
        super().__init__(provider_id, message=message)


class RateLimitExceededError(DevarkError):
    """Raised by the local sliding-window limiter when a request would exceed capacity."""

    def __init__(self, name: str, retry_after_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded for {name}. Wait {retry_after_seconds}s.")
        self.name = name
        self.retry_after_seconds = retry_after_seconds


class CLIProviderError(DevarkError):
    """A spawned CLI failed; carries a classification and a user-facing suggestion."""

    def __init__(self, message: str, error_type: CLIErrorType, suggestion: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.suggestion = suggestion
