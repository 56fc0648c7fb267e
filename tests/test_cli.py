"""Smoke tests for the CLI.

These tests run every command against a temporary SQLite store and
never touch the network.
"""

import json
import os
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from forge_build import __version__
from forge_build.cli import app
from forge_build.provisioners.shell.runner import ShellRunError
from forge_build.ssh.client import CommandOutput

runner = CliRunner()

BUILD_YAML = """\
apiVersion: forge.build/v1alpha1
kind: Build
metadata:
  name: ubuntu-base
  namespace: default
spec:
  provisioners:
    - type: built-in/shell
      run: apt-get update
"""


@pytest.fixture
def db_env(tmp_path):
    """Point the CLI at a temporary database."""
    with patch.dict(os.environ, {"FORGE_DB_URL": f"sqlite:///{tmp_path / 'store.sqlite'}"}):
        yield


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "build.yaml"
    path.write_text(BUILD_YAML)
    return path


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "reconcile machine image Builds" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"forge-build version {__version__}" in result.stdout

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

    def test_config_command(self, db_env) -> None:
        """CLI config should show every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Store:", "Logging:", "Manager:", "Shell provisioner:"):
            assert section in result.stdout

    def test_config_json(self, db_env) -> None:
        """CLI config --json should output parseable JSON."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["db_url"].endswith("store.sqlite")
        assert data["worker_number"] == 10
        assert data["provisioner_namespace"] == "forge-core"

    def test_config_reads_env(self, db_env) -> None:
        """Environment variables are reflected."""
        with patch.dict(os.environ, {"FORGE_WORKER_NAME": "team-a"}):
            result = runner.invoke(app, ["config", "--json"])
        assert json.loads(result.stdout)["worker_name"] == "team-a"


class TestCLIApply:
    """Test applying manifests."""

    def test_apply_creates_then_unchanged(self, db_env, manifest) -> None:
        """Applying twice creates the Build and then leaves it alone."""
        result = runner.invoke(app, ["apply", str(manifest)])
        assert result.exit_code == 0
        assert "build/ubuntu-base created" in result.stdout

        result = runner.invoke(app, ["apply", str(manifest)])
        assert result.exit_code == 0
        assert "build/ubuntu-base unchanged" in result.stdout

    def test_apply_patches(self, db_env, manifest) -> None:
        """Applying a changed manifest patches the Build."""
        runner.invoke(app, ["apply", str(manifest)])
        manifest.write_text(BUILD_YAML.replace("apt-get update", "apt-get upgrade"))
        result = runner.invoke(app, ["apply", str(manifest)])
        assert "build/ubuntu-base patched" in result.stdout

    def test_apply_missing_path(self, db_env, tmp_path) -> None:
        """A missing file is reported."""
        result = runner.invoke(app, ["apply", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
        assert "Path not found" in result.stdout

    def test_apply_invalid_manifest(self, db_env, tmp_path) -> None:
        """An invalid document is reported."""
        path = tmp_path / "bad.yaml"
        path.write_text("kind: Build\n")
        result = runner.invoke(app, ["apply", str(path)])
        assert result.exit_code == 1
        assert "Invalid manifest" in result.stdout


class TestCLIGetBuilds:
    """Test listing Builds."""

    def test_no_builds(self, db_env) -> None:
        """An empty store says so."""
        result = runner.invoke(app, ["get", "builds"])
        assert result.exit_code == 0
        assert "No builds found" in result.stdout

    def test_no_builds_json(self, db_env) -> None:
        """An empty store gives an empty JSON list."""
        result = runner.invoke(app, ["get", "builds", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_builds_table(self, db_env, manifest) -> None:
        """Builds are listed in a table."""
        runner.invoke(app, ["apply", str(manifest)])
        result = runner.invoke(app, ["get", "builds"])
        assert result.exit_code == 0
        assert "Builds (1)" in result.stdout
        assert "ubuntu-base" in result.stdout

    def test_builds_json(self, db_env, manifest) -> None:
        """--json gives Build summaries."""
        runner.invoke(app, ["apply", str(manifest)])
        result = runner.invoke(app, ["get", "builds", "--json"])
        data = json.loads(result.stdout)
        assert [b["name"] for b in data] == ["ubuntu-base"]
        assert data[0]["provisioners"][0]["type"] == "built-in/shell"

    def test_namespace_filter(self, db_env, manifest) -> None:
        """-n limits the listing to one namespace."""
        runner.invoke(app, ["apply", str(manifest)])
        result = runner.invoke(app, ["get", "builds", "-n", "other", "--json"])
        assert json.loads(result.stdout) == []


class TestCLIRun:
    """Test the manager command."""

    def test_invalid_log_level(self, db_env) -> None:
        """Invalid settings are rejected before anything starts."""
        result = runner.invoke(app, ["run", "--log-level", "verbose"])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.stdout


class TestCLIProvisionerShell:
    """Test the shell provisioner entrypoint."""

    def test_runs_script(self, db_env) -> None:
        """The script output is printed."""
        with patch(
            "forge_build.provisioners.shell.runner.run_shell_provisioner",
            return_value=CommandOutput("image built\n", "", 0),
        ) as run:
            result = runner.invoke(
                app,
                [
                    "provisioner-shell",
                    "--namespace",
                    "default",
                    "--run-script",
                    "make image",
                    "--ssh-credentials-secret-name",
                    "b1-ssh-credentials",
                ],
            )
        assert result.exit_code == 0
        assert "image built" in result.stdout
        args, kwargs = run.call_args
        assert args[1:] == ("default", "b1-ssh-credentials")
        assert kwargs["script"] == "make image"
        assert kwargs["script_ref"] == ""

    def test_failure_exits_non_zero(self, db_env) -> None:
        """Runner errors exit with code 1."""
        with patch(
            "forge_build.provisioners.shell.runner.run_shell_provisioner",
            side_effect=ShellRunError("script to run is empty", "empty_script"),
        ):
            result = runner.invoke(app, ["provisioner-shell", "--namespace", "default"])
        assert result.exit_code == 1
        assert "Error running script (empty_script)" in result.stdout

    def test_missing_secret(self, db_env) -> None:
        """A missing credentials Secret exits with code 1."""
        result = runner.invoke(
            app,
            [
                "provisioner-shell",
                "--namespace",
                "default",
                "--run-script",
                "true",
                "--ssh-credentials-secret-name",
                "missing",
            ],
        )
        assert result.exit_code == 1
        assert "Error running script (not_found)" in result.stdout


class TestCLIKeygen:
    """Test key pair generation."""

    def test_keygen(self, tmp_path) -> None:
        """A key pair is written and its fingerprint printed."""
        result = runner.invoke(app, ["keygen", "-o", str(tmp_path / "keys"), "--name", "build"])
        assert result.exit_code == 0
        assert (tmp_path / "keys" / "build").exists()
        assert (tmp_path / "keys" / "build.pub").read_text().startswith("ssh-rsa ")
        assert "Fingerprint:" in result.stdout

    def test_keygen_refuses_overwrite(self, tmp_path) -> None:
        """Existing keys are not overwritten."""
        (tmp_path / "id_rsa").write_text("existing")
        result = runner.invoke(app, ["keygen", "-o", str(tmp_path)])
        assert result.exit_code == 1
        assert "Refusing to overwrite" in result.stdout
        assert (tmp_path / "id_rsa").read_text() == "existing"
