"""Tests for CLI commands."""

from __future__ import annotations

import json

import pytest
import typer
from typer.testing import CliRunner
from unittest.mock import patch

from flowforge.cli import commands
from flowforge.cli.commands import _parse_context, app

runner = CliRunner()

WORKFLOW = """\
id: release
name: Release
version: 1
agents:
  - id: writer
    role: Technical writer
steps:
  - id: notes
    type: agent
    agent: writer
    task: "Write release notes for {{task}}"
  - id: approve
    type: gate
    gate:
      message: Publish the notes?
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(commands.console, "width", 200)
    monkeypatch.delenv("FLOWFORGE_DATA_DIR", raising=False)
    (tmp_path / "release.yml").write_text(WORKFLOW)
    return tmp_path


def invoke(project, *args):
    return runner.invoke(app, ["--data-dir", str(project / "data"), *args])


def only_run_id(project) -> str:
    [path] = (project / "data" / "runs").glob("*.json")
    return path.stem


class TestVersionCommand:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.stdout


class TestInitCommand:
    def test_init(self, tmp_path):
        result = runner.invoke(app, ["init", str(tmp_path / "proj")])

        assert result.exit_code == 0
        assert (tmp_path / "proj" / "flowforge.yaml").exists()
        assert (tmp_path / "proj" / ".flowforge" / "workflows" / "feature-dev.yml").exists()

    def test_init_non_empty(self, tmp_path):
        (tmp_path / "proj").mkdir()
        (tmp_path / "proj" / "README.md").write_text("hi")

        result = runner.invoke(app, ["init", str(tmp_path / "proj")])
        assert result.exit_code == 1
        assert "not empty" in result.stdout


class TestValidateCommand:
    def test_valid(self, project):
        result = runner.invoke(app, ["validate", "release.yml"])
        assert result.exit_code == 0
        assert "is valid" in result.stdout
        assert "notes [agent]" in result.stdout

    def test_nonexistent(self):
        result = runner.invoke(app, ["validate", "/nonexistent.yaml"])
        assert result.exit_code == 1
        assert "File not found" in result.stdout

    def test_invalid(self, project):
        (project / "bad.yml").write_text(WORKFLOW.replace("agent: writer", "agent: ghost"))
        result = runner.invoke(app, ["validate", "bad.yml"])
        assert result.exit_code == 1
        assert "unknown agent" in result.stdout


class TestWorkflowCommands:
    def test_apply_and_list(self, project):
        result = invoke(project, "apply", "release.yml")
        assert result.exit_code == 0
        assert "Saved release v1" in result.stdout
        assert (project / "data" / "workflows" / "release.yml").exists()

        result = invoke(project, "workflows")
        assert result.exit_code == 0
        assert "release" in result.stdout

    def test_list_reports_invalid(self, project):
        (project / "data" / "workflows").mkdir(parents=True)
        (project / "data" / "workflows" / "broken.yml").write_text("id: broken\n")

        result = invoke(project, "workflows")
        assert result.exit_code == 0
        assert "Skipped invalid workflow 'broken'" in result.stdout


class TestRunCommands:
    def test_run_blocks_then_resume(self, project):
        invoke(project, "apply", "release.yml")

        result = invoke(project, "run", "release", "--task", "v1.2", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "blocked" in result.stdout
        assert "Resume with: flowforge resume" in result.stdout

        run_id = only_run_id(project)
        stored = json.loads((project / "data" / "runs" / f"{run_id}.json").read_text())
        assert stored["context"]["task"] == "v1.2"
        assert stored["taskId"] == "v1.2"

        result = invoke(project, "--actor", "lead", "resume", run_id, "-x", "ticket=OPS-1")
        assert result.exit_code == 0, result.output
        assert "completed" in result.stdout

        result = invoke(project, "show", run_id)
        assert result.exit_code == 0
        assert "OPS-1" in result.stdout

    def test_run_unknown_workflow(self, project):
        result = invoke(project, "run", "nope", "--dry-run")
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_run_interactive_approve(self, project):
        invoke(project, "apply", "release.yml")

        with patch("flowforge.control.approval.Prompt.ask", return_value="a"):
            result = invoke(project, "run", "release", "--dry-run", "--interactive")

        assert result.exit_code == 0, result.output
        assert "completed" in result.stdout

    def test_run_interactive_reject(self, project):
        invoke(project, "apply", "release.yml")

        with patch("flowforge.control.approval.Prompt.ask", side_effect=["r", "not ready"]):
            result = invoke(project, "run", "release", "--dry-run", "-i")

        assert result.exit_code == 1
        assert "Gate rejected: not ready" in result.stdout

    def test_runs_and_fail(self, project):
        invoke(project, "apply", "release.yml")
        invoke(project, "run", "release", "--task", "T-9", "--dry-run")
        run_id = only_run_id(project)

        result = invoke(project, "runs", "--status", "blocked")
        assert result.exit_code == 0
        assert run_id in result.stdout

        result = invoke(project, "fail", run_id, "--reason", "abandoned")
        assert result.exit_code == 0
        assert "marked failed" in result.stdout

        result = invoke(project, "fail", run_id, "--reason", "again")
        assert result.exit_code == 1
        assert "already failed" in result.stdout

    def test_show_missing(self, project):
        result = invoke(project, "show", "run_missing")
        assert result.exit_code == 1
        assert "not found" in result.stdout


class TestParseContext:
    def test_scalars(self):
        assert _parse_context(["n=3", "ok=true", "name=api", "empty="]) == {
            "n": 3, "ok": True, "name": "api", "empty": "",
        }

    def test_value_with_equals(self):
        assert _parse_context(["query=a=b"]) == {"query": "a=b"}

    def test_bad_pair(self):
        with pytest.raises(typer.BadParameter):
            _parse_context(["novalue"])
