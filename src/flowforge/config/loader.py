"""YAML loading and validation for settings files and workflow definitions."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Union

import yaml
from pydantic import ValidationError

from flowforge.config.defaults import merge_with_defaults
from flowforge.config.schema import FlowForgeSettings, WorkflowDefinition


class ConfigError(Exception):
    pass


class DefinitionError(ConfigError):
    """A workflow definition violates a structural invariant."""


def _format_errors(e: ValidationError) -> str:
    errors = []
    for err in e.errors():
        loc = " → ".join(str(p) for p in err["loc"])
        msg = err["msg"]
        # model-level validators carry no location
        errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")
    return "\n".join(errors)


def parse_yaml(text: str, source: str = "<string>") -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark"):
            mark = e.problem_mark
            raise ConfigError(
                f"YAML syntax error in '{source}' on line {mark.line + 1}, "
                f"column {mark.column + 1}: {e.problem}"
            )
        raise ConfigError(f"YAML syntax error in '{source}': {e}")


def _read(path: Path) -> str:
    if not path.exists():
        raise ConfigError(f"File not found at '{path}'.")
    try:
        return path.read_text(encoding="utf-8")
    except PermissionError:
        raise ConfigError(f"Permission denied reading '{path}'.")
    except OSError as e:
        raise ConfigError(f"Error reading '{path}': {e}")


class ConfigLoader:

    @staticmethod
    def load(path: Union[str, Path, None] = None) -> FlowForgeSettings:
        """Load service settings, falling back to defaults when no file is given."""
        raw_config: Any = {}
        if path is not None:
            path = Path(path)
            raw_config = parse_yaml(_read(path), str(path)) or {}
            if not isinstance(raw_config, dict):
                raise ConfigError(
                    f"Configuration file '{path}' must be a YAML mapping (dict), "
                    f"got {type(raw_config).__name__}."
                )
        return ConfigLoader.validate(raw_config)

    @staticmethod
    def validate(config: dict) -> FlowForgeSettings:
        merged = merge_with_defaults(config)

        data_dir = os.getenv("FLOWFORGE_DATA_DIR")
        if data_dir:
            merged["storage"]["path"] = data_dir
        log_level = os.getenv("FLOWFORGE_LOG_LEVEL")
        if log_level:
            merged["observe"]["log_level"] = log_level.lower()

        try:
            return FlowForgeSettings(**merged)
        except ValidationError as e:
            raise ConfigError(f"Configuration validation failed:\n{_format_errors(e)}")


class DefinitionLoader:

    @staticmethod
    def load(path: Union[str, Path]) -> WorkflowDefinition:
        path = Path(path)
        return DefinitionLoader.parse(_read(path), str(path))

    @staticmethod
    def parse(text: str, source: str = "<string>") -> WorkflowDefinition:
        try:
            document = parse_yaml(text, source)
        except ConfigError as e:
            raise DefinitionError(str(e))
        return DefinitionLoader.validate(document, source)

    @staticmethod
    def validate(document: Any, source: str = "<document>") -> WorkflowDefinition:
        if isinstance(document, WorkflowDefinition):
            document = document.model_dump()
        if not isinstance(document, dict):
            raise DefinitionError(
                f"Workflow '{source}' must be a mapping (dict), got {type(document).__name__}."
            )
        try:
            return WorkflowDefinition.model_validate(document)
        except ValidationError as e:
            raise DefinitionError(f"Invalid workflow '{source}':\n{_format_errors(e)}")

    @staticmethod
    def dump(definition: WorkflowDefinition) -> str:
        return yaml.safe_dump(
            to_document(definition),
            sort_keys=False,
            allow_unicode=True,
        )


def to_document(definition: WorkflowDefinition) -> dict:
    return definition.model_dump(mode="json", exclude_none=True)
