"""
Completion request / result value objects.

Both are frozen; a request is built once per RPC call, validated, and
handed to the provider unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from domain.errors import (
    EmptyPromptError,
    InvalidMaxTokensError,
    InvalidTemperatureError,
)

DEFAULT_MAX_OUTPUT_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0

# The provider reports no confidence score; this constant stands in for one.
FIXED_CONFIDENCE = 0.8

# Streaming responses carry no usage metadata, so tokens are estimated.
CHARS_PER_TOKEN = 4


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    """A single question for the model."""

    prompt: str
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    prior_context: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def with_defaults(cls, prompt: str) -> CompletionRequest:
        return cls(prompt=prompt)

    @classmethod
    def with_options(
        cls,
        prompt: str,
        max_output_tokens: int,
        temperature: float,
        prior_context: Sequence[str] = (),
    ) -> CompletionRequest:
        return cls(
            prompt=prompt,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
            prior_context=tuple(prior_context),
        )

    def validate(self) -> None:
        """Raise the first failing ``ValidationError``.

        Order: prompt, temperature, max tokens.
        """
        if not self.prompt:
            raise EmptyPromptError()
        if not MIN_TEMPERATURE <= self.temperature <= MAX_TEMPERATURE:
            raise InvalidTemperatureError()
        if self.max_output_tokens <= 0:
            raise InvalidMaxTokensError()

    def segments(self) -> list[str]:
        """Input segments in the order the model reads them."""
        return [*self.prior_context, self.prompt]


def build_request(
    prompt: str,
    max_tokens: int = 0,
    temperature: float = 0.0,
    context: Sequence[str] = (),
) -> CompletionRequest:
    """
    Build a request from caller-supplied options.

    Defaults are all-or-nothing: if *any* of ``max_tokens > 0``,
    ``temperature > 0`` or a non-empty ``context`` is supplied, the request
    uses exactly the supplied values, so a context-only caller ends up with
    ``max_tokens=0`` and fails validation. Existing callers depend on this.
    """
    if max_tokens > 0 or temperature > 0 or len(context) > 0:
        return CompletionRequest.with_options(prompt, max_tokens, temperature, context)
    return CompletionRequest.with_defaults(prompt)


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Model output, or one chunk of it when streaming."""

    text: str
    tokens_used: int = 0
    confidence: float = 0.0
    processing_ms: int = 0
