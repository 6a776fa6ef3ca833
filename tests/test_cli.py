"""CLI tests driven through typer's CliRunner."""
import subprocess

import pytest
from typer.testing import CliRunner

from forgekit import __version__
from forgekit.cli import app
from forgekit.core.build_runner import BuildRunner
from forgekit.core.errors import HTTPStatusError
from forgekit.core.secure_client import ApiResponse

runner = CliRunner()

pytestmark = pytest.mark.usefixtures("cli_env")


class FakeApi:
    def __init__(self, get=None, delete=None):
        self.get_outcome = get or ApiResponse(status=200, data={
            "slug": "my-app", "url": "https://my-app.forgekit.ai", "status": "running",
        })
        self.delete_outcome = delete or ApiResponse(status=204, data=None)
        self.calls = []

    def _reply(self, outcome):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get(self, url, **kwargs):
        self.calls.append(("GET", url))
        return self._reply(self.get_outcome)

    def delete(self, url, **kwargs):
        self.calls.append(("DELETE", url))
        return self._reply(self.delete_outcome)


@pytest.fixture
def fake_api(monkeypatch):
    def install(**outcomes):
        api = FakeApi(**outcomes)
        monkeypatch.setattr("forgekit.cli_deploy_commands.get_secure_client", lambda config: api)
        return api
    return install


class TestHelp:
    def test_main_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "ForgeKit - deploy your project in one command" in result.output
        for command in ("login", "logout", "whoami", "deploy", "delete", "list", "logs", "stats", "secrets:set"):
            assert command in result.output

    def test_deploy_help(self):
        result = runner.invoke(app, ["deploy", "--help"])
        assert result.exit_code == 0
        for option in ("--build-dir", "--skip-build", "--dry-run", "--env", "--verbose"):
            assert option in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestAuthCommands:
    def test_whoami_not_authenticated(self):
        result = runner.invoke(app, ["whoami"])
        assert result.exit_code == 1
        assert "Not authenticated" in result.output

    def test_whoami(self, logged_in):
        result = runner.invoke(app, ["whoami"])
        assert result.exit_code == 0
        assert "Email: dev@example.com" in result.output
        assert "User ID: user-123" in result.output

    def test_login_when_already_authenticated(self, logged_in):
        result = runner.invoke(app, ["login"])
        assert result.exit_code == 0
        assert "Already logged in as dev@example.com" in result.output

    def test_logout_without_session(self):
        result = runner.invoke(app, ["logout"])
        assert result.exit_code == 0
        assert "No active session found" in result.output


class TestDeployCommand:
    def test_dry_run(self, project_dir, logged_in, monkeypatch):
        monkeypatch.chdir(project_dir)
        result = runner.invoke(app, ["deploy", "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "[1/6] 🔐 Authenticating..." in result.output
        assert "Dry Run - Deployment Preview" in result.output
        assert "Target URL: https://api.forgekit.ai/deploy_cli" in result.output
        assert "Mode: New deployment (my-app)" in result.output
        assert not (project_dir / "Dockerfile").exists()

    def test_dry_run_lists_env_names(self, project_dir, logged_in, monkeypatch):
        monkeypatch.chdir(project_dir)
        monkeypatch.setenv("VITE_API_URL", "https://api.example.com")
        result = runner.invoke(app, ["deploy", "--dry-run", "--env", "EXTRA=1"])

        assert result.exit_code == 0, result.output
        assert "Environment: EXTRA, VITE_API_URL" in result.output

    def test_invalid_env_assignment(self, project_dir, logged_in, monkeypatch):
        monkeypatch.chdir(project_dir)
        result = runner.invoke(app, ["deploy", "--dry-run", "--env", "oops"])

        assert result.exit_code == 1
        assert "Invalid environment variables" in result.output
        assert "expected KEY=VALUE" in result.output

    def test_outside_project(self, tmp_path, logged_in, monkeypatch):
        empty = tmp_path / "empty"
        empty.mkdir()
        monkeypatch.chdir(empty)
        result = runner.invoke(app, ["deploy", "--dry-run"])

        assert result.exit_code == 1
        assert "Deployment validation failed" in result.output
        assert "No forgekit.json found" in result.output
        assert "Preparing deployment failed" in result.output


class TestDeleteCommand:
    def test_invalid_slug(self):
        result = runner.invoke(app, ["delete", "Bad_Slug", "--force"])
        assert result.exit_code == 1
        assert "Invalid slug format" in result.output

    def test_delete_with_force(self, logged_in, fake_api):
        api = fake_api()
        result = runner.invoke(app, ["delete", "my-app", "--force"])

        assert result.exit_code == 0, result.output
        assert "Status: running" in result.output
        assert api.calls == [
            ("GET", "https://api.forgekit.ai/deployment/my-app"),
            ("DELETE", "https://api.forgekit.ai/deployment/my-app"),
        ]
        assert "All data has been permanently deleted." in result.output

    def test_keep_data(self, logged_in, fake_api):
        api = fake_api()
        result = runner.invoke(app, ["delete", "my-app", "--force", "--keep-data"])

        assert result.exit_code == 0, result.output
        assert api.calls[-1] == ("DELETE", "https://api.forgekit.ai/deployment/my-app?keep_data=true")
        assert "Persistent data (volumes) have been preserved." in result.output

    def test_declined_confirmation(self, logged_in, fake_api):
        api = fake_api()
        result = runner.invoke(app, ["delete", "my-app"], input="n\n")

        assert result.exit_code == 0
        assert "Deletion cancelled." in result.output
        assert [method for method, _ in api.calls] == ["GET"]

    def test_not_found(self, logged_in, fake_api):
        fake_api(get=HTTPStatusError(404, "Request failed with status 404"))
        result = runner.invoke(app, ["delete", "ghost", "--force"])

        assert result.exit_code == 1
        assert "Deployment 'ghost' not found." in result.output

    def test_conflict_reason(self, logged_in, fake_api):
        fake_api(delete=HTTPStatusError(409, "conflict", body={"message": "build in progress"}))
        result = runner.invoke(app, ["delete", "my-app", "--force"])

        assert result.exit_code == 1
        assert "Cannot delete deployment 'my-app': build in progress" in result.output


class FailingBuild:
    """subprocess.run stand-in whose build fails on every attempt."""

    def __init__(self):
        self.calls = 0

    def __call__(self, argv, **kwargs):
        self.calls += 1
        return subprocess.CompletedProcess(argv, 1, f"OUT-{self.calls}", f"ERR-BLOCK-{self.calls}")


@pytest.fixture
def failing_build(monkeypatch):
    fake = FailingBuild()
    monkeypatch.setattr(
        "forgekit.core.orchestrator.BuildRunner",
        lambda config, sleep: BuildRunner(config, runner=fake, sleep=lambda seconds: None),
    )
    return fake


class TestDeployFailure:
    def test_build_output_surfaced(self, project_dir, logged_in, failing_build, monkeypatch):
        monkeypatch.chdir(project_dir)
        result = runner.invoke(app, ["deploy"])

        assert result.exit_code == 1
        assert failing_build.calls == 3
        assert "Attempt 3 (exit code 1)" in result.output
        for number in (1, 2, 3):
            assert f"ERR-BLOCK-{number}" in result.output
        assert "OUT-1" not in result.output
        assert "💡 Suggestions:" in result.output
        assert not (project_dir / "Dockerfile").exists()

    def test_failure_message_printed_once(self, project_dir, logged_in, failing_build, monkeypatch):
        monkeypatch.chdir(project_dir)
        result = runner.invoke(app, ["deploy"])

        assert result.output.count("Build failed after 3 attempts") == 1

    def test_verbose_includes_stdout(self, project_dir, logged_in, failing_build, monkeypatch):
        monkeypatch.chdir(project_dir)
        result = runner.invoke(app, ["deploy", "--verbose"])

        assert result.exit_code == 1
        assert "OUT-1" in result.output
        assert "OUT-3" in result.output
