"""Tests for the deploy orchestrator."""
import io
import json
import shutil
import subprocess
import tarfile
from pathlib import Path

import pytest

from conftest import make_token, write_json
from forgekit.core.build_runner import BuildRunner
from forgekit.core.errors import (
    AuthenticationError,
    BuildError,
    HTTPStatusError,
    NetworkError,
    ProjectConfigError,
    ServerError,
    UploadError,
    ValidationError,
)
from forgekit.core.orchestrator import (
    DeployOptions,
    DeployOrchestrator,
    classify_upload_error,
    slugify,
)
from forgekit.core.pipeline import EventKind, StepName, StepState
from forgekit.core.secure_client import ApiResponse
from forgekit.core.token_store import TokenStore


class FakeClient:
    """Records uploads and replays queued responses or exceptions."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [
            ApiResponse(status=200, data={"url": "https://x.example/a", "slug": "proj-1"})
        ]
        self.calls = []

    def post(self, url, **kwargs):
        name, bundle, content_type = kwargs["files"]["file"]
        members = tarfile.open(fileobj=io.BytesIO(bundle.read()), mode="r:gz").getnames()
        self.calls.append({"url": url, "members": members, **kwargs})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeRunner:
    def __init__(self, *returncodes):
        self.returncodes = list(returncodes) or [0]
        self.calls = 0

    def __call__(self, argv, **kwargs):
        self.calls += 1
        code = self.returncodes.pop(0)
        return subprocess.CompletedProcess(argv, code, "built" if code == 0 else "", "" if code == 0 else "boom")


@pytest.fixture
def store(config):
    store = TokenStore(config)
    store.save_token(make_token())
    return store


@pytest.fixture
def events():
    return []


@pytest.fixture
def make_orchestrator(config, store, events):
    def factory(client=None, runner=None):
        client = client or FakeClient()
        runner = runner or FakeRunner()
        orchestrator = DeployOrchestrator(
            config,
            store,
            client,
            build_runner=BuildRunner(config, runner=runner, sleep=lambda s: None),
            listeners=[events.append],
            sleep=lambda s: None,
        )
        return orchestrator, client, runner
    return factory


def failed_steps(events):
    return [e.step.name for e in events if e.kind is EventKind.FAILED]


class TestFirstDeploy:
    def test_creates_and_records_identity(self, project_dir, make_orchestrator, events):
        orchestrator, client, runner = make_orchestrator()
        result = orchestrator.deploy(DeployOptions(project_root=project_dir))

        assert result.url == "https://x.example/a"
        assert result.slug == "proj-1"
        assert client.calls[0]["url"] == "https://api.forgekit.ai/deploy_cli"
        assert client.calls[0]["data"]["slug"] == "my-app"
        assert client.calls[0]["headers"]["Authorization"].startswith("Bearer ")
        assert client.calls[0]["deployment"] is True
        assert runner.calls == 1

        saved = json.loads((project_dir / "forgekit.json").read_text())
        assert saved["deployment"]["slug"] == "proj-1"
        assert saved["deployment"]["url"] == "https://x.example/a"
        assert events[-1].kind is EventKind.FINISHED

    def test_bundle_contains_sources_and_generated_dockerfile(self, project_dir, make_orchestrator):
        orchestrator, client, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir))

        members = client.calls[0]["members"]
        assert "Dockerfile" in members
        assert "dist/index.html" in members
        assert "src/main.tsx" in members
        assert not any(m.startswith("node_modules") for m in members)

    def test_temporary_files_removed(self, project_dir, make_orchestrator):
        orchestrator, client, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir))

        assert not (project_dir / "Dockerfile").exists()
        bundle = client.calls[0]["files"]["file"][1]
        assert bundle.closed
        assert not Path(bundle.name).exists()

    def test_existing_dockerfile_kept(self, project_dir, make_orchestrator):
        (project_dir / "Dockerfile").write_text("FROM nginx\n")
        orchestrator, _, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert (project_dir / "Dockerfile").read_text() == "FROM nginx\n"

    def test_unknown_stack_ships_build_output_only(self, project_dir, make_orchestrator):
        write_json(project_dir / "forgekit.json", {
            "slug": "my-app", "stack": {"frontend": "elm"}, "build": {"buildDir": "dist"},
        })
        orchestrator, client, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert client.calls[0]["members"] == ["dist/assets/app.js", "dist/index.html"]

    def test_env_sent_as_json(self, project_dir, make_orchestrator):
        orchestrator, client, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(
            project_root=project_dir,
            environ={"VITE_API_URL": "https://api.example.com", "SECRET": "x"},
            env={"EXTRA": "1"},
        ))
        env = json.loads(client.calls[0]["data"]["env"])
        assert env == {"VITE_API_URL": "https://api.example.com", "EXTRA": "1"}

    def test_no_env_field_when_empty(self, project_dir, make_orchestrator):
        orchestrator, client, _ = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert "env" not in client.calls[0]["data"]


class TestRedeploy:
    def test_targets_recorded_slug(self, project_dir, make_orchestrator):
        first, _, _ = make_orchestrator()
        first.deploy(DeployOptions(project_root=project_dir))

        second, client, _ = make_orchestrator()
        second.deploy(DeployOptions(project_root=project_dir))
        assert client.calls[0]["url"] == "https://api.forgekit.ai/redeploy/proj-1"
        assert client.calls[0]["data"]["slug"] == "proj-1"


class TestSkipBuild:
    def test_build_step_omitted(self, project_dir, make_orchestrator, events):
        orchestrator, _, runner = make_orchestrator()
        orchestrator.deploy(DeployOptions(project_root=project_dir, skip_build=True))

        assert runner.calls == 0
        started = [e for e in events if e.kind is EventKind.STARTED]
        assert len(started) == 5
        assert all(e.total == 5 for e in started)


class TestDryRun:
    def test_returns_plan_without_side_effects(self, project_dir, make_orchestrator, events):
        orchestrator, client, runner = make_orchestrator()
        result = orchestrator.deploy(DeployOptions(project_root=project_dir, dry_run=True))

        assert result.dry_run
        assert result.plan.endpoint == "https://api.forgekit.ai/deploy_cli"
        assert result.plan.slug == "my-app"
        assert result.plan.estimate.file_count > 0
        assert client.calls == []
        assert runner.calls == 0
        assert not (project_dir / "Dockerfile").exists()
        assert "deployment" not in json.loads((project_dir / "forgekit.json").read_text())
        assert [e.step.name for e in events if e.kind is EventKind.COMPLETED] == [
            StepName.AUTHENTICATE, StepName.PREPARE,
        ]


class TestFailures:
    def test_not_logged_in(self, project_dir, make_orchestrator, events, store):
        store.clear_token()
        orchestrator, client, _ = make_orchestrator()
        with pytest.raises(AuthenticationError):
            orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert failed_steps(events) == [StepName.AUTHENTICATE]
        assert client.calls == []

    def test_readiness_errors_fail_prepare(self, project_dir, make_orchestrator, events):
        (project_dir / "package.json").write_text(json.dumps({"name": "x"}))
        orchestrator, _, _ = make_orchestrator()
        with pytest.raises(ValidationError):
            orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert failed_steps(events) == [StepName.PREPARE]
        assert orchestrator.pipeline.states[StepName.BUILD] is StepState.PENDING

    def test_build_fails_three_times(self, project_dir, make_orchestrator, events):
        orchestrator, client, runner = make_orchestrator(runner=FakeRunner(1, 1, 1))
        with pytest.raises(BuildError) as exc_info:
            orchestrator.deploy(DeployOptions(project_root=project_dir))

        assert runner.calls == 3
        assert len(exc_info.value.attempts) == 3
        assert failed_steps(events) == [StepName.BUILD]
        assert client.calls == []
        assert not (project_dir / "Dockerfile").exists()

    def test_empty_build_output_fails_bundle(self, project_dir, make_orchestrator, events):
        shutil.rmtree(project_dir / "dist")
        (project_dir / "dist").mkdir()
        orchestrator, client, _ = make_orchestrator()
        with pytest.raises(ValidationError):
            orchestrator.deploy(DeployOptions(project_root=project_dir, skip_build=True))
        assert failed_steps(events) == [StepName.BUNDLE]
        assert client.calls == []

    def test_server_error_retried_then_succeeds(self, project_dir, make_orchestrator):
        client = FakeClient(
            ServerError(503),
            ApiResponse(status=200, data={"url": "https://x.example/a", "slug": "proj-1"}),
        )
        orchestrator, _, _ = make_orchestrator(client=client)
        result = orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert result.slug == "proj-1"
        assert len(client.calls) == 2

    def test_network_error_exhausts_attempts(self, project_dir, make_orchestrator, events):
        client = FakeClient(*[NetworkError("Connection reset")] * 3)
        orchestrator, _, _ = make_orchestrator(client=client)
        with pytest.raises(UploadError, match="Connection reset") as exc_info:
            orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert exc_info.value.retryable
        assert len(client.calls) == 3
        assert failed_steps(events) == [StepName.UPLOAD]
        assert "deployment" not in json.loads((project_dir / "forgekit.json").read_text())

    def test_client_error_not_retried(self, project_dir, make_orchestrator):
        client = FakeClient(HTTPStatusError(413, "Request failed with status 413"))
        orchestrator, _, _ = make_orchestrator(client=client)
        with pytest.raises(UploadError, match="too large") as exc_info:
            orchestrator.deploy(DeployOptions(project_root=project_dir))
        assert not exc_info.value.retryable
        assert len(client.calls) == 1

    def test_identity_save_failure_is_only_a_warning(self, project_dir, make_orchestrator, events, monkeypatch):
        def broken(self, identity):
            raise ProjectConfigError("disk full")

        monkeypatch.setattr("forgekit.core.project_store.ProjectStore.record_deployment", broken)
        orchestrator, _, _ = make_orchestrator()
        result = orchestrator.deploy(DeployOptions(project_root=project_dir))

        assert result.url == "https://x.example/a"
        warnings = [e.message for e in events if e.kind is EventKind.LOG and e.level == "warning"]
        assert any("Could not save deployment info" in w for w in warnings)


class TestClassification:
    def test_unauthorized(self):
        error = classify_upload_error(HTTPStatusError(401, "x"))
        assert isinstance(error, AuthenticationError)
        assert error.message == "Authentication expired. Try running: forge login"

    def test_too_large(self):
        error = classify_upload_error(HTTPStatusError(413, "x"))
        assert error.message == "Project bundle is too large."
        assert error.hints

    def test_rate_limited(self):
        error = classify_upload_error(HTTPStatusError(429, "x"))
        assert error.message == "Rate limit exceeded. Please wait a few minutes and try again."

    def test_other_status_with_detail(self):
        error = classify_upload_error(HTTPStatusError(422, "x", body={"detail": "bad slug"}))
        assert error.message == "Server returned status 422: bad slug"
        assert error.status == 422


class TestSlugify:
    @pytest.mark.parametrize("value,expected", [
        ("My App", "my-app"),
        ("  Hello__World!! ", "hello-world"),
        ("***", "app"),
    ])
    def test_slugify(self, value, expected):
        assert slugify(value) == expected
