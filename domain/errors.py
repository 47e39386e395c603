"""Domain errors.

Transports map these to the ``INVALID_ARGUMENT`` / ``INTERNAL_ERROR``
envelope codes in ``transport.relay``.
"""

from __future__ import annotations


class MahjongAIError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"


# ── Caller-caused ────────────────────────────────────────────────────


class ValidationError(MahjongAIError):
    """A completion request failed validation. Never retried."""

    code = "INVALID_ARGUMENT"


class EmptyPromptError(ValidationError):
    def __init__(self) -> None:
        super().__init__("prompt cannot be empty")


class InvalidTemperatureError(ValidationError):
    def __init__(self) -> None:
        super().__init__("temperature must be between 0.0 and 2.0")


class InvalidMaxTokensError(ValidationError):
    def __init__(self) -> None:
        super().__init__("max tokens must be greater than 0")


# ── Provider-side ────────────────────────────────────────────────────


class ProviderUnavailableError(MahjongAIError):
    """The provider answered but returned no usable text."""

    def __init__(self, message: str = "AI service is unavailable") -> None:
        super().__init__(message)


class ProviderError(MahjongAIError):
    """Transport or protocol failure while talking to the provider."""
