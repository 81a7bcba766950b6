"""LLM response type and error class."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LLMResponse:
    """One completion as seen by an agent."""

    content: str | None = None
    model_used: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMError(Exception):
    """Every model in a fallback chain failed."""

    def __init__(self, message: str, models_tried: list[str] | None = None, errors: list[str] | None = None):
        super().__init__(message)
        self.models_tried = list(models_tried or [])
        self.errors = list(errors or [])

    @property
    def last_error(self) -> str | None:
        return self.errors[-1] if self.errors else None
