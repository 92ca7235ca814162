"""Tests for CLI commands.

Tests all flowcore CLI commands using Click's CliRunner:
- validate: Check a flow file
- run: Execute a flow
- order: Print execution order
- schema: Show a node's output fields
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from flowcore import __version__
from flowcore.cli import load_flows, main


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_cli(tmp_path, monkeypatch):
    """Wide console, and no user config file or FLOWCORE_* variables."""
    monkeypatch.setattr("flowcore.cli.console", Console(width=200))
    monkeypatch.setattr("flowcore.core.config.DEFAULT_CONFIG_PATH", tmp_path / "no-config.yaml")
    for key in [k for k in os.environ if k.startswith("FLOWCORE_")]:
        monkeypatch.delenv(key)


def _write_flow(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


class TestLoadFlows:
    """Tests for flow file loading."""

    def test_yaml_and_json(self, flow_file, json_flow_file):
        yaml_flow, _ = load_flows(flow_file)
        json_flow, _ = load_flows(json_flow_file)

        assert yaml_flow == json_flow
        assert yaml_flow.id == "flow-greet"

    def test_multiple_flows(self, tmp_path, flow_file):
        primary = yaml.safe_load(flow_file.read_text())
        other = {"id": "flow-other", "name": "Other"}
        path = _write_flow(tmp_path / "many.yaml", {"flows": [primary, other]})

        flow, repository = load_flows(path)

        assert flow.id == "flow-greet"
        assert "flow-other" in repository


class TestGlobalOptions:
    """Tests for group-level options."""

    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_bad_config_file(self, cli_runner, tmp_path, flow_file):
        config = tmp_path / "config.yaml"
        config.write_text("turbo: true\n")

        result = cli_runner.invoke(main, ["--config", str(config), "order", str(flow_file)])

        assert result.exit_code == 1
        assert "Unknown config keys" in result.output


class TestValidateCommand:
    """Tests for 'flowcore validate' command."""

    def test_valid_flow(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["validate", str(flow_file)])

        assert result.exit_code == 0
        assert "valid" in result.output
        assert "1 compatible" in result.output

    def test_flow_with_errors(self, cli_runner, tmp_path):
        path = _write_flow(
            tmp_path / "broken.yaml",
            {
                "name": "Broken",
                "nodes": [
                    {"name": "Shape", "slug": "shape", "type": "JavaScriptCodeTransform"},
                    {"name": "Done", "slug": "done", "type": "Return", "parameters": {"value": "{{ghost}}"}},
                ],
            },
        )

        result = cli_runner.invoke(main, ["validate", str(path)])

        assert result.exit_code == 1
        assert "TRANSFORM_NO_INPUT" in result.output
        assert "ghost" in result.output

    def test_invariant_violation(self, cli_runner, tmp_path):
        path = _write_flow(
            tmp_path / "dup.yaml",
            {
                "name": "Dup",
                "nodes": [
                    {"name": "A", "slug": "same", "type": "Return"},
                    {"name": "B", "slug": "same", "type": "Return"},
                ],
            },
        )

        result = cli_runner.invoke(main, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Duplicate slug" in result.output

    def test_not_a_mapping(self, cli_runner, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        result = cli_runner.invoke(main, ["validate", str(path)])

        assert result.exit_code == 1
        assert "expected a mapping" in result.output

    def test_schema_errors_listed(self, cli_runner, tmp_path):
        path = _write_flow(tmp_path / "bad.yaml", {"name": "Bad", "nodes": [{"name": "x"}]})

        result = cli_runner.invoke(main, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Schema validation failed" in result.output


class TestRunCommand:
    """Tests for 'flowcore run' command."""

    def test_run_prints_output(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "-p", "who=Ada"])

        assert result.exit_code == 0
        assert "Hello Ada" in result.output
        assert "Completed" in result.output

    def test_json_output(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "--param", "who=Ada", "--json"])

        assert result.exit_code == 0
        record = json.loads(result.output)
        assert record["status"] == "completed"
        assert record["output"] == "Hello Ada"
        assert [n["node_slug"] for n in record["node_executions"]] == ["greet", "done"]

    def test_failed_run_exits_nonzero(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file)])

        assert result.exit_code == 1
        assert "Missing required parameters: who" in result.output

    def test_unknown_trigger(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "-t", "nope"])

        assert result.exit_code == 1
        assert "No node with slug 'nope'" in result.output

    def test_bad_param_syntax(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["run", str(flow_file), "-p", "who"])

        assert result.exit_code == 2
        assert "Expected key=value" in result.output


class TestOrderCommand:
    """Tests for 'flowcore order' command."""

    def test_prints_numbered_order(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["order", str(flow_file)])

        assert result.exit_code == 0
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        assert lines[0].startswith("1. greet")
        assert lines[1].startswith("2. done")


class TestSchemaCommand:
    """Tests for 'flowcore schema' command."""

    def test_trigger_fields(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["schema", str(flow_file), "greet"])

        assert result.exit_code == 0
        assert "toolName" in result.output
        assert "who" in result.output

    def test_unknown_output(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["schema", str(flow_file), "done"])

        assert result.exit_code == 0
        assert "unknown" in result.output

    def test_api_call_sample(self, cli_runner, tmp_path):
        path = _write_flow(
            tmp_path / "api.yaml",
            {
                "name": "Api",
                "nodes": [
                    {
                        "name": "Fetch",
                        "slug": "fetch",
                        "type": "ApiCall",
                        "parameters": {"url": "https://api.example.com"},
                    }
                ],
            },
        )
        sample = tmp_path / "sample.json"
        sample.write_text(json.dumps({"forecast": [{"high": 20}]}))

        pending = cli_runner.invoke(main, ["schema", str(path), "fetch"])
        resolved = cli_runner.invoke(main, ["schema", str(path), "fetch", "--sample", str(sample)])

        assert "pending" in pending.output
        assert resolved.exit_code == 0
        assert "forecast[].high" in resolved.output

    def test_unknown_node(self, cli_runner, flow_file):
        result = cli_runner.invoke(main, ["schema", str(flow_file), "ghost"])

        assert result.exit_code == 1
        assert "No node with slug 'ghost'" in result.output
