"""Result data classes exchanged with the agent invocation adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class RenderedInput:
    step_id: str
    agent_id: str
    prompt: str
    output_format: str = "text"


@dataclass
class InvocationResult:
    success: bool
    output: Any = None
    error: str | None = None
    artifacts: dict = field(default_factory=dict)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    duration: float = 0.0
    model_used: str = ""

    def usage(self) -> dict:
        """Token, cost and timing figures as stored on the step record."""
        return {
            "input_tokens": self.tokens.input_tokens,
            "output_tokens": self.tokens.output_tokens,
            "total_tokens": self.tokens.total,
            "cost": self.cost,
            "duration": round(self.duration, 3),
            "model_used": self.model_used,
        }
