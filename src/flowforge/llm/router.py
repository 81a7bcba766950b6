"""LLM routing with fallback chains and cost tracking via litellm."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import litellm
from litellm import acompletion

from flowforge.llm.provider import LLMError, LLMResponse

_log = logging.getLogger(__name__)

litellm.suppress_debug_info = True

RATE_LIMIT_RETRIES = 3


@dataclass
class CallRecord:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    success: bool = True
    error: str | None = None


def is_rate_limited(error: Exception) -> bool:
    text = str(error).lower()
    return "rate" in text or "429" in text


class LLMRouter:
    """Tries the primary model, then each fallback in order.

    A rate-limited model is retried with exponential backoff before moving
    on; any other error moves on at once. ``LLMError`` is raised only when
    every model failed.
    """

    def __init__(self, default_model: str = "openai/gpt-4o-mini", cost_tracking: bool = True):
        self.default_model = default_model
        self.cost_tracking = cost_tracking
        self.total_tokens = {"input": 0, "output": 0}
        self.total_cost = 0.0
        self.call_log: list[CallRecord] = []

    async def complete(
        self,
        messages: list[dict],
        model: str | None = None,
        fallback: list[str] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        response_format: dict | None = None,
    ) -> LLMResponse:
        chain = [model or self.default_model] + (fallback or [])
        request: dict[str, Any] = {
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            request["response_format"] = response_format

        errors: list[str] = []
        for candidate in chain:
            for attempt in range(1, RATE_LIMIT_RETRIES + 1):
                started = time.monotonic()
                try:
                    response = await acompletion(model=candidate, **request)
                except Exception as e:
                    error = f"{candidate} (attempt {attempt}): {type(e).__name__}: {e}"
                    errors.append(error)
                    self._record(CallRecord(
                        model=candidate, latency_ms=_elapsed_ms(started), success=False, error=error,
                    ))
                    _log.warning("LLM call failed: %s", error)
                    if is_rate_limited(e) and attempt < RATE_LIMIT_RETRIES:
                        await asyncio.sleep(2 ** (attempt - 1))
                        continue
                    break
                return self._response(candidate, response, _elapsed_ms(started))

        raise LLMError(
            f"All models failed. Tried: {chain}. Errors: {errors}",
            models_tried=chain,
            errors=errors,
        )

    def _response(self, model: str, response: Any, latency_ms: float) -> LLMResponse:
        usage = getattr(response, "usage", None)
        record = CallRecord(
            model=model,
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
            cost=self._cost(response) if self.cost_tracking else 0.0,
            latency_ms=latency_ms,
        )
        self._record(record)
        return LLMResponse(
            content=response.choices[0].message.content,
            model_used=model,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cost=record.cost,
            latency_ms=latency_ms,
        )

    def _record(self, record: CallRecord) -> None:
        self.call_log.append(record)
        self.total_tokens["input"] += record.input_tokens
        self.total_tokens["output"] += record.output_tokens
        self.total_cost += record.cost

    @staticmethod
    def _cost(response: Any) -> float:
        try:
            return litellm.completion_cost(completion_response=response)
        except Exception:
            # Unknown models have no price table entry.
            _log.debug("No cost data for response", exc_info=True)
            return 0.0

    def get_cost_summary(self) -> dict:
        by_model: dict[str, dict] = {}
        for record in self.call_log:
            entry = by_model.setdefault(
                record.model, {"cost": 0.0, "tokens": {"input": 0, "output": 0}, "calls": 0, "failures": 0}
            )
            entry["cost"] += record.cost
            entry["tokens"]["input"] += record.input_tokens
            entry["tokens"]["output"] += record.output_tokens
            entry["calls"] += 1
            if not record.success:
                entry["failures"] += 1

        return {
            "total_cost": self.total_cost,
            "total_tokens": dict(self.total_tokens),
            "by_model": by_model,
            "call_count": len(self.call_log),
        }


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
