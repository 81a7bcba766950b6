"""LLM-backed agents and the invocation adapter that dispatches steps to them."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from flowforge.config.schema import AgentConfig
from flowforge.core.result import InvocationResult, RenderedInput, TokenUsage
from flowforge.llm.provider import LLMError, LLMResponse

_log = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL)

_FORMAT_GUIDELINES = {
    "text": "Respond with plain text.",
    "markdown": "Respond in Markdown.",
    "json": "Respond with a single JSON object and nothing else.",
}


class Agent:

    def __init__(
        self,
        agent_id: str,
        role: str,
        goal: str,
        backstory: str = "",
        llm: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        fallback: list[str] | None = None,
        instructions: str = "",
    ):
        self.agent_id = agent_id
        self.role = role
        self.goal = goal
        self.backstory = backstory
        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.fallback = fallback or []
        self.instructions = instructions

    @classmethod
    def from_config(cls, config: AgentConfig, temperature: float = 0.7, max_tokens: int = 4096) -> "Agent":
        return cls(
            agent_id=config.id,
            role=config.role or config.id,
            goal=config.goal,
            backstory=config.backstory,
            llm=config.llm,
            temperature=config.temperature if config.temperature is not None else temperature,
            max_tokens=config.max_tokens or max_tokens,
            fallback=config.fallback,
            instructions=config.instructions,
        )

    async def execute(self, rendered: RenderedInput, llm_router: Any) -> InvocationResult:
        start_time = time.time()
        messages = [
            {"role": "system", "content": self._build_system_prompt(rendered.output_format)},
            {"role": "user", "content": rendered.prompt},
        ]

        try:
            response: LLMResponse = await llm_router.complete(
                messages=messages,
                model=self.llm,
                fallback=self.fallback or None,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"} if rendered.output_format == "json" else None,
            )
        except LLMError as e:
            _log.warning("Agent %s could not reach any model: %s", self.agent_id, e)
            return InvocationResult(
                success=False,
                error=str(e),
                duration=time.time() - start_time,
            )

        tokens = TokenUsage(input_tokens=response.input_tokens, output_tokens=response.output_tokens)
        content = response.content or ""
        result = InvocationResult(
            success=True,
            output=content,
            tokens=tokens,
            cost=response.cost,
            model_used=response.model_used,
        )

        if rendered.output_format == "json":
            try:
                result.output = parse_json_output(content)
            except ValueError as e:
                result.success = False
                result.output = None
                result.error = f"Agent '{self.agent_id}' returned invalid JSON: {e}"
                result.artifacts["raw_output"] = content

        result.duration = time.time() - start_time
        return result

    def _build_system_prompt(self, output_format: str = "text") -> str:
        parts = [f"You are {self.role}."]
        if self.goal:
            parts.append(f"\nYour goal: {self.goal}")
        if self.backstory:
            parts.append(f"\n{self.backstory}")
        if self.instructions:
            parts.append(f"\n{self.instructions}")

        parts.append(
            "\nGuidelines:\n"
            "- You are one step of a larger workflow; complete only this step.\n"
            "- Be precise and factual.\n"
            f"- {_FORMAT_GUIDELINES.get(output_format, _FORMAT_GUIDELINES['text'])}"
        )
        return "\n".join(parts)


def parse_json_output(content: str) -> Any:
    """Parse model output as JSON, tolerating a surrounding Markdown fence."""
    text = content.strip()
    match = _FENCE.match(text)
    if match:
        text = match.group(1).strip()
    return json.loads(text)


class LLMAgentInvoker:
    """Agent invocation adapter that runs each step through an LLM agent."""

    def __init__(self, llm_router: Any, temperature: float = 0.7, max_tokens: int = 4096):
        self.llm_router = llm_router
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._agents: dict[tuple, Agent] = {}

    async def invoke(self, agent: AgentConfig, rendered: RenderedInput, context: dict) -> InvocationResult:
        _log.info("Invoking agent %s for step %s", agent.id, rendered.step_id)
        result = await self._agent_for(agent).execute(rendered, self.llm_router)
        if result.success:
            _log.info(
                "Agent %s finished step %s (%d tokens, $%.4f)",
                agent.id, rendered.step_id, result.tokens.total, result.cost,
            )
        return result

    def _agent_for(self, config: AgentConfig) -> Agent:
        # Keyed on the whole config since run snapshots may pin older agent settings.
        key = (config.id, config.model_dump_json())
        agent = self._agents.get(key)
        if agent is None:
            agent = self._agents[key] = Agent.from_config(
                config, temperature=self.temperature, max_tokens=self.max_tokens
            )
        return agent
