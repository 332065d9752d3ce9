"""
Tests for the tiller CLI.

Logging is silenced so ``--json`` output on stdout stays parseable.
"""

import json
import logging
import textwrap

import pytest
import structlog
from typer.testing import CliRunner

from tiller.cli.app import app

runner = CliRunner()

PLUGIN = textwrap.dedent(
    """
    def bind(registry):
        registry.bind(
            "golden.ci.container-builder",
            lambda args, sandbox: {"imageRef": args.tags[0] + "@sha256:1", "digest": "sha256:1", "pushed": True},
        )
        registry.bind(
            "golden.k8s.apply",
            lambda args, sandbox: {"success": True, "operation": args.operation.value, "resourcesAffected": 2},
        )
        registry.bind(
            "golden.temporal.version-manager",
            lambda args, sandbox: {"success": True, "buildId": args.build_id, "operation": args.operation.value},
        )
    """
)


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch, tmp_path):
    def setup_logging(settings):
        structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))

    monkeypatch.setattr("tiller.cli.utils.setup_logging", setup_logging)
    monkeypatch.setenv("TILLER_SANDBOX_ROOT", str(tmp_path / "sandboxes"))
    setup_logging(None)


@pytest.fixture
def plugin(tmp_path, monkeypatch):
    (tmp_path / "tiller_cli_plugin.py").write_text(PLUGIN)
    monkeypatch.syspath_prepend(str(tmp_path))
    return "tiller_cli_plugin:bind"


@pytest.fixture
def deploy_input(tmp_path):
    path = tmp_path / "input.json"
    path.write_text(json.dumps({"version": "1.0.0", "registry": "reg.local", "contextPath": ".", "skipFlags": True}))
    return path


class TestRootCommand:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "tiller-core" in result.stdout


class TestCapabilitiesCommands:
    def test_list_json(self):
        result = runner.invoke(app, ["capabilities", "list", "--json"])
        assert result.exit_code == 0
        rows = {row["id"]: row for row in json.loads(result.stdout)}
        assert len(rows) == 8
        assert rows["golden.traffic.canary-analyzer"]["bound"] is True
        assert rows["golden.k8s.apply"]["bound"] is False

    def test_list_with_plugin(self, plugin):
        result = runner.invoke(app, ["capabilities", "list", "--json", "--plugin", plugin])
        rows = {row["id"]: row for row in json.loads(result.stdout)}
        assert rows["golden.k8s.apply"]["bound"] is True

    def test_bad_plugin_spec(self):
        result = runner.invoke(app, ["capabilities", "list", "--plugin", "no-colon"])
        assert result.exit_code == 1

    def test_show(self):
        result = runner.invoke(app, ["capabilities", "show", "golden.k8s.apply"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["id"] == "golden.k8s.apply"
        assert "manifestPath" in data["input_schema"]["properties"]

    def test_show_unknown(self):
        result = runner.invoke(app, ["capabilities", "show", "golden.nope"])
        assert result.exit_code == 1


class TestBlueprintsCommands:
    def test_list_json(self):
        result = runner.invoke(app, ["blueprints", "list", "--json"])
        assert result.exit_code == 0
        ids = [row["id"] for row in json.loads(result.stdout)]
        assert ids == ["blueprints.deploy.blue-green", "blueprints.traffic.progressive-rollout"]

    def test_show(self):
        result = runner.invoke(app, ["blueprints", "show", "blueprints.deploy.blue-green"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["id"] == "blueprints.deploy.blue-green"


class TestEgressCommand:
    def test_allowed_by_pattern(self):
        result = runner.invoke(app, ["egress", "check", "api.prometheus.io", "-p", "*.prometheus.io"])
        assert result.exit_code == 0
        assert "ALLOWED *.prometheus.io" in result.stdout

    def test_capability_allowlist_is_port_aware(self):
        ok = runner.invoke(app, ["egress", "check", "prometheus:9090", "-c", "golden.traffic.canary-analyzer"])
        denied = runner.invoke(app, ["egress", "check", "prometheus:9091", "-c", "golden.traffic.canary-analyzer"])
        assert ok.exit_code == 0
        assert denied.exit_code == 1
        assert "DENIED" in denied.stdout

    def test_empty_allowlist_denies(self):
        result = runner.invoke(app, ["egress", "check", "example.com"])
        assert result.exit_code == 1


class TestRunCommands:
    def test_run_then_inspect(self, plugin, deploy_input, tmp_path):
        journal = str(tmp_path / "runs")
        result = runner.invoke(
            app,
            [
                "run", "blueprints.deploy.blue-green",
                "--input", str(deploy_input),
                "--plugin", plugin,
                "--run-id", "cli-run-1",
                "--journal-dir", journal,
                "--json",
            ],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["run_id"] == "cli-run-1"
        assert payload["output"]["imageRef"] == "reg.local/harmony-worker:1.0.0@sha256:1"
        assert payload["output"]["drainStatus"] == "SKIPPED"

        listed = runner.invoke(app, ["runs", "list", "--journal-dir", journal, "--json"])
        assert [r["status"] for r in json.loads(listed.stdout)] == ["COMPLETED"]

        shown = runner.invoke(app, ["runs", "show", "cli-run-1", "--journal-dir", journal, "--steps", "--json"])
        data = json.loads(shown.stdout)
        assert data["blueprint_id"] == "blueprints.deploy.blue-green"
        assert [s["key"] for s in data["steps"]] == ["main:1", "main:2", "main:3"]

    def test_run_without_handlers_fails(self, deploy_input, tmp_path):
        result = runner.invoke(
            app,
            ["run", "blueprints.deploy.blue-green", "--input", str(deploy_input), "-j", str(tmp_path / "runs")],
        )
        assert result.exit_code == 1

    def test_run_rejects_bad_secret_option(self, deploy_input, tmp_path):
        result = runner.invoke(
            app,
            ["run", "blueprints.deploy.blue-green", "-i", str(deploy_input), "-s", "novalue", "-j", str(tmp_path)],
        )
        assert result.exit_code == 1

    def test_show_missing_run(self, tmp_path):
        result = runner.invoke(app, ["runs", "show", "nope", "--journal-dir", str(tmp_path)])
        assert result.exit_code == 1
