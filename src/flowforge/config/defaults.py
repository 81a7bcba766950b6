"""Default configuration values."""

from __future__ import annotations

import copy

DEFAULTS = {
    "storage": {
        "backend": "files",
        "path": ".flowforge",
    },
    "observe": {
        "log_level": "info",
        "log_format": "pretty",
    },
    "runner": {
        "max_advances": 1000,
        "dry_run": False,
    },
    "llm": {
        "default_model": "openai/gpt-4o-mini",
        "cost_tracking": True,
    },
}

SAMPLE_WORKFLOW = """\
id: feature-dev
name: Feature development
version: 1
description: Plan, implement until the tests pass, then wait for review.
agents:
  - id: planner
    role: Technical planner
    goal: Break the task into concrete implementation steps
  - id: coder
    role: Software engineer
    goal: Implement the plan and report whether the tests pass
steps:
  - id: plan
    type: agent
    agent: planner
    task: "Plan the work for: {{task}}"
  - id: implement
    type: loop
    agent: coder
    task: "Implement this plan and reply with JSON {\\"tests_passed\\": true|false}: {{plan}}"
    output_format: json
    loop:
      verify_step: tests_pass
      max_iterations: 3
    on_fail:
      max_retries: 2
      backoff: 5
  - id: tests_pass
    type: check
    condition: "{{tests_passed}} == true"
  - id: review
    type: gate
    gate:
      message: Review the implementation before it is merged
"""


def merge_with_defaults(config: dict) -> dict:
    return _deep_merge(copy.deepcopy(DEFAULTS), config)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base. Returns a new dict."""
    merged = {}
    for key in set(base) | set(override):
        if key in base and key in override:
            bv, ov = base[key], override[key]
            if isinstance(bv, dict) and isinstance(ov, dict):
                merged[key] = _deep_merge(bv, ov)
            else:
                merged[key] = copy.deepcopy(ov)
        elif key in override:
            merged[key] = copy.deepcopy(override[key])
        else:
            merged[key] = copy.deepcopy(base[key])
    return merged
