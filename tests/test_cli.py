"""Smoke tests for the CLI.

These tests verify basic CLI functionality without requiring
network access or a sandbox.
"""

import json
import os
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from rstack_build import __version__
from rstack_build.cli import app
from rstack_build.errors import BootstrapError, CacheError
from rstack_build.pipeline import BuildSummary

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path):
    """Point the cache at tmp_path and drop inherited RSTACK_ variables."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("RSTACK_")}
    env["RSTACK_CACHE_DIR"] = str(tmp_path / "cache")
    with patch.dict(os.environ, env, clear=True):
        yield


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "rstack-build" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self) -> None:
        """CLI config should show all sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Platform:" in result.stdout
        assert "Paths:" in result.stdout
        assert "Operational:" in result.stdout
        assert "Cache directory" in result.stdout

    def test_config_json(self) -> None:
        """CLI config --json should output valid JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["release_version"] == "latest"


class TestCLICacheKey:
    """Test the cache-key command."""

    def test_prints_key(self) -> None:
        """Should print release-stack-fingerprint."""
        result = runner.invoke(app, ["cache-key", "--stack", "22"])
        assert result.exit_code == 0
        assert result.stdout.strip().startswith("latest-22-")

    def test_release_override(self) -> None:
        """Should honor --release."""
        result = runner.invoke(app, ["cache-key", "-s", "heroku-20", "-r", "v142"])
        assert result.exit_code == 0
        assert result.stdout.strip().startswith("v142-20-")

    def test_stable(self) -> None:
        """Same configuration should print the same key."""
        first = runner.invoke(app, ["cache-key", "-s", "22"]).stdout
        second = runner.invoke(app, ["cache-key", "-s", "22"]).stdout
        assert first == second

    def test_unsupported_stack(self) -> None:
        """Should exit 1 for an unknown stack."""
        result = runner.invoke(app, ["cache-key", "-s", "16"])
        assert result.exit_code == 1


class TestCLICompile:
    """Test the compile command."""

    def test_unsupported_stack_never_runs_build(self, tmp_path) -> None:
        """Should fail before any network or sandbox activity."""
        with patch("rstack_build.pipeline.run_build") as run_build:
            result = runner.invoke(app, ["compile", str(tmp_path), "-s", "16"])

        assert result.exit_code == 1
        run_build.assert_not_called()

    def test_success_summary(self, tmp_path) -> None:
        """Should print the build summary."""
        summary = BuildSummary(
            cache_key="latest-22-abc",
            restored={"environment": True},
            strategies=["renv"],
            persisted=["environment", "renv"],
        )
        with patch("rstack_build.pipeline.run_build", return_value=summary):
            result = runner.invoke(app, ["compile", str(tmp_path), "-s", "22"])

        assert result.exit_code == 0
        assert "latest-22-abc" in result.stdout
        assert "renv" in result.stdout

    def test_json_summary(self, tmp_path) -> None:
        """Should output the summary as JSON with --json."""
        summary = BuildSummary(cache_key="latest-22-abc")
        with patch("rstack_build.pipeline.run_build", return_value=summary):
            result = runner.invoke(
                app, ["compile", str(tmp_path), "-s", "22", "--json"]
            )

        assert result.exit_code == 0
        assert json.loads(result.stdout)["cache_key"] == "latest-22-abc"

    def test_flags_reach_config(self, tmp_path) -> None:
        """--keep-artifacts and --debug should land in the build config."""
        summary = BuildSummary(cache_key="k")
        with patch("rstack_build.pipeline.run_build", return_value=summary) as rb:
            runner.invoke(
                app,
                ["compile", str(tmp_path), "-s", "22", "--keep-artifacts", "--debug"],
            )

        config = rb.call_args.args[0]
        assert config.keep_artifacts is True
        assert config.debug is True

    def test_bootstrap_failure_exits_one(self, tmp_path) -> None:
        """Should exit 1 and surface the failing command output."""
        error = BootstrapError("Rscript failed", exit_code=1, output="Error in library(x)")
        with patch("rstack_build.pipeline.run_build", side_effect=error):
            result = runner.invoke(app, ["compile", str(tmp_path), "-s", "22"])

        assert result.exit_code == 1
        assert "bootstrap_failed" in result.output
        assert "Error in library(x)" in result.output

    def test_persist_failure_exits_one(self, tmp_path) -> None:
        """Should report cache write failures as a categorized error."""
        error = CacheError(
            "Failed to persist renv cache: disk full", code="persist_error"
        )
        with patch("rstack_build.pipeline.run_build", side_effect=error):
            result = runner.invoke(app, ["compile", str(tmp_path), "-s", "22"])

        assert result.exit_code == 1
        assert "persist_error" in result.output
        assert "disk full" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)


class TestCLICache:
    """Test the cache subcommands."""

    def test_list_empty(self) -> None:
        """Should report an empty cache."""
        result = runner.invoke(app, ["cache", "list"])
        assert result.exit_code == 0
        assert "No cache layers found" in result.stdout

    def test_list_and_prune(self, tmp_path) -> None:
        """Should list keys and prune all but the kept one."""
        layers = tmp_path / "cache" / "layers"
        for key in ("latest-22-aaa", "latest-22-bbb"):
            (layers / key).mkdir(parents=True)
            (layers / key / "renv.tar.gz").write_bytes(b"x")

        listed = runner.invoke(app, ["cache", "list"])
        assert "latest-22-aaa" in listed.stdout
        assert "latest-22-bbb" in listed.stdout

        pruned = runner.invoke(app, ["cache", "prune", "--keep", "latest-22-bbb"])
        assert pruned.exit_code == 0
        assert "Removed 1" in pruned.stdout
        assert not (layers / "latest-22-aaa").exists()
        assert (layers / "latest-22-bbb").exists()
