"""Deployment orchestration.

Runs the fixed step sequence (authenticate, prepare, build, bundle, upload,
process) over the lower-level services and reports every transition through
a :class:`DeploymentPipeline`. Printing is left to pipeline listeners.
"""
import json
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from forgekit.core.build_runner import BuildRunner
from forgekit.core.bundler import BundleBuilder, BundleEstimate
from forgekit.core.config import ForgeConfig
from forgekit.core.dockerfile import has_profile, materialize_dockerfile
from forgekit.core.env import collect_deploy_env
from forgekit.core.errors import (
    AuthenticationError,
    ForgeError,
    HTTPStatusError,
    NetworkError,
    ProjectConfigError,
    ServerError,
    UploadError,
)
from forgekit.core.logger import get_logger
from forgekit.core.login import LoginHandshake, ensure_logged_in
from forgekit.core.pipeline import DeploymentPipeline, Listener, StepName
from forgekit.core.project_store import ProjectStore
from forgekit.core.retry import retry_call
from forgekit.core.secure_client import ApiResponse, SecureClient
from forgekit.core.token_store import TokenStore
from forgekit.core.validator import DeployValidator
from forgekit.models.project import DeploymentIdentity, ProjectConfig

logger = get_logger(__name__)

TOO_LARGE_HINTS = [
    "Remove node_modules from your project",
    "Check your .dockerignore excludes build artifacts you do not need",
    "Optimize your build output size",
]

NETWORK_HINTS = [
    "Check your internet connection",
    "Large projects on slow connections may need FORGEKIT_UPLOAD_TIMEOUT raised",
]


def slugify(value: str) -> str:
    """Lowercase letters, digits and single hyphens."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "app"


@dataclass
class DeployOptions:
    """Caller-supplied switches for one deploy.

    Attributes:
        project_root: Directory containing forgekit.json
        build_dir: Build output directory override
        verbose: Surface info messages and build output
        skip_build: Use existing build output
        dry_run: Stop after preparation and return the plan
        env: Explicit KEY=VALUE assignments to inject
        environ: Snapshot of the process environment used for detection
    """

    project_root: Path
    build_dir: Optional[str] = None
    verbose: bool = False
    skip_build: bool = False
    dry_run: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=dict)


@dataclass
class DeployPlan:
    """Resolved description of a deploy; computing it has no side effects."""

    project_root: Path
    build_dir: str
    endpoint: str
    redeploy: bool
    slug: str
    candidates: List[str]
    env: Dict[str, str]
    build_command: Optional[str] = None
    stack: Optional[str] = None
    estimate: Optional[BundleEstimate] = None

    @property
    def env_names(self) -> List[str]:
        return sorted(self.env)


@dataclass
class DeployResult:
    plan: DeployPlan
    dry_run: bool = False
    url: Optional[str] = None
    slug: Optional[str] = None
    build_id: Optional[str] = None
    response: Optional[dict] = None


class DeployOrchestrator:
    """Top-level deploy state machine.

    Usage:
        orchestrator = DeployOrchestrator(config, store, client, listeners=[reporter])
        result = orchestrator.deploy(DeployOptions(project_root=Path.cwd()))
    """

    def __init__(
        self,
        config: ForgeConfig,
        store: TokenStore,
        client: SecureClient,
        handshake_factory: Optional[Callable[[], LoginHandshake]] = None,
        build_runner: Optional[BuildRunner] = None,
        listeners: Iterable[Listener] = (),
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize orchestrator.

        Args:
            config: Runtime configuration
            store: Credential store
            client: Secure transport client used for the upload
            handshake_factory: Creates a login handshake when no token is stored;
                authentication fails outright when omitted
            build_runner: Build executor (defaults to one using ``sleep``)
            listeners: Receive every pipeline event
            sleep: Sleep function used between retries
        """
        self.config = config
        self.store = store
        self.client = client
        self.handshake_factory = handshake_factory
        self.build_runner = build_runner or BuildRunner(config, sleep=sleep)
        self.listeners = list(listeners)
        self.sleep = sleep
        self.pipeline: Optional[DeploymentPipeline] = None

    @contextmanager
    def _step(self, name: StepName):
        """Start ``name``, then complete it or fail it with the raised error."""
        self.pipeline.start(name)
        try:
            yield
        except ForgeError as e:
            self.pipeline.fail(name, e.message)
            raise
        except KeyboardInterrupt:
            self.pipeline.fail(name, "Interrupted")
            raise
        except Exception as e:
            self.pipeline.fail(name, str(e) or type(e).__name__)
            raise
        self.pipeline.complete(name)

    def _log(self, message: str, level: str = "verbose") -> None:
        self.pipeline.log(message, level=level)

    def deploy(self, options: DeployOptions) -> DeployResult:
        """Run the deploy.

        Returns:
            DeployResult (``dry_run=True`` with only the plan for dry runs)

        Raises:
            ForgeError: Whatever step failed; the pipeline has already been
                told about the failure
        """
        self.pipeline = DeploymentPipeline(skip_build=options.skip_build)
        for listener in self.listeners:
            self.pipeline.subscribe(listener)

        project_store = ProjectStore(options.project_root)
        archive: Optional[Path] = None
        generated_dockerfile: Optional[Path] = None

        try:
            with self._step(StepName.AUTHENTICATE):
                token = self._authenticate()

            with self._step(StepName.PREPARE):
                project = self._check_readiness(options, project_store)
                plan = self._plan(options, project_store, project)
                if options.dry_run:
                    plan.estimate = BundleBuilder(options.project_root).estimate_size(plan.candidates)
                    self._log(
                        f"Estimated bundle: {plan.estimate.file_count} files, "
                        f"{plan.estimate.megabytes:.2f} MB"
                    )

            if options.dry_run:
                return DeployResult(plan=plan, dry_run=True)

            if self.pipeline.has_step(StepName.BUILD):
                with self._step(StepName.BUILD):
                    self._build(options, plan)

            with self._step(StepName.BUNDLE):
                self._verify(options, plan, project)
                generated_dockerfile = self._ensure_dockerfile(options, plan)
                self.pipeline.update(f"Compressing {plan.build_dir} directory")
                archive = BundleBuilder(options.project_root).build_archive(plan.candidates)
                size_mb = archive.stat().st_size / 1024 / 1024
                self._log(f"Bundle size: {size_mb:.2f} MB")
                if size_mb > 100:
                    self._log(f"Large bundle size ({size_mb:.2f} MB). Consider optimizing your build.", "warning")

            with self._step(StepName.UPLOAD):
                response = self._upload(plan, archive, token)
                identity = self._persist_identity(project_store, plan, response.data)

            with self._step(StepName.PROCESS):
                self._log(f"Server response: {json.dumps(response.data, indent=2)}")

            self.pipeline.finish()
            return DeployResult(
                plan=plan,
                url=identity.url,
                slug=identity.slug,
                build_id=identity.build_id,
                response=response.data,
            )
        finally:
            if archive is not None:
                archive.unlink(missing_ok=True)
                logger.debug("Cleaned up temporary bundle file")
            if generated_dockerfile is not None:
                generated_dockerfile.unlink(missing_ok=True)
                logger.debug("Removed generated Dockerfile")

    # Steps

    def _authenticate(self) -> str:
        if self.handshake_factory is None:
            token = self.store.get_token()
        else:
            token = ensure_logged_in(self.store, self.handshake_factory)
        if not token:
            raise AuthenticationError("Unable to authenticate. Please run `forge login` first.")
        self._log("Authentication token validated")
        return token

    def _check_readiness(self, options: DeployOptions, project_store: ProjectStore) -> ProjectConfig:
        validator = DeployValidator(options.project_root, project_store)
        report = validator.check_readiness(skip_build=options.skip_build, build_dir=options.build_dir)
        for warning in report.warnings:
            self._log(warning, "warning")
        for info in report.info:
            self._log(info)
        report.raise_for_errors("Deployment validation failed")
        return report.project

    def _plan(self, options: DeployOptions, project_store: ProjectStore, project: ProjectConfig) -> DeployPlan:
        build_dir = project_store.resolve_build_dir(project, options.build_dir)
        stack = project.frontend or project.backend

        if project.is_redeploy:
            slug = project.deployment.slug
            endpoint = self.config.redeploy_url(slug)
        else:
            slug = project.slug or slugify(project.project_name or options.project_root.resolve().name)
            endpoint = self.config.deploy_url

        # A container build needs the sources; otherwise only the output ships
        container_build = (options.project_root / "Dockerfile").exists() or has_profile(stack)
        candidates = ["."] if container_build else [build_dir]

        env = collect_deploy_env(options.project_root, options.environ, options.env)

        plan = DeployPlan(
            project_root=options.project_root,
            build_dir=build_dir,
            endpoint=endpoint,
            redeploy=project.is_redeploy,
            slug=slug,
            candidates=candidates,
            env=env,
            build_command=project.build.command,
            stack=stack,
        )
        self._log(f"Build directory: {build_dir}")
        self._log(f"Deploy URL: {endpoint}")
        if plan.redeploy:
            self._log(f"Redeploying existing deployment: {slug}")
        return plan

    def _build(self, options: DeployOptions, plan: DeployPlan) -> None:
        command = " ".join(self.build_runner.resolve_command(options.project_root, plan.build_command))
        self.pipeline.update(f"Running: {command}")

        def announce_retry(attempt: int, error: Exception, delay: float) -> None:
            self._log(f"Attempt {attempt} failed, retrying in {delay:.0f}s...", "warning")

        result = self.build_runner.run(options.project_root, plan.build_command, on_retry=announce_retry)
        if options.verbose and result.stdout.strip():
            self._log(f"Build output: {result.stdout.strip()}")
        if result.stderr.strip():
            self._log(f"Build warnings: {result.stderr.strip()}", "warning")

    def _verify(self, options: DeployOptions, plan: DeployPlan, project: ProjectConfig) -> None:
        self._log("Verifying build output...")
        report = DeployValidator(options.project_root).verify_build_output(plan.build_dir, project.frontend)
        for warning in report.warnings:
            self._log(warning, "warning")
        for info in report.info:
            self._log(info)
        if not report.valid:
            report.raise_for_errors("Build verification failed")
        self._log("Build verification passed")

    def _ensure_dockerfile(self, options: DeployOptions, plan: DeployPlan) -> Optional[Path]:
        generated = materialize_dockerfile(options.project_root, plan.stack)
        if generated is not None:
            self._log(f"Generated Dockerfile for {plan.stack}")
        return generated

    def _upload(self, plan: DeployPlan, archive: Path, token: str) -> ApiResponse:
        fields = {"slug": plan.slug}
        if plan.env:
            fields["env"] = json.dumps(plan.env)
        headers = {"Authorization": f"Bearer {token}"}

        self.pipeline.update("Establishing secure connection")

        def send() -> ApiResponse:
            with open(archive, "rb") as bundle:
                return self.client.post(
                    plan.endpoint,
                    data=fields,
                    files={"file": ("bundle.tar.gz", bundle, "application/gzip")},
                    headers=headers,
                    timeout=self.config.upload_timeout,
                    deployment=True,
                )

        def announce_retry(attempt: int, error: Exception, delay: float) -> None:
            self._log(f"Upload attempt {attempt} failed, retrying in {delay:.0f}s...", "warning")

        started = time.monotonic()
        try:
            response = retry_call(
                send,
                max_attempts=self.config.upload_attempts,
                delay=self.config.upload_retry_delay,
                exceptions=(NetworkError, ServerError),
                on_retry=announce_retry,
                sleep=self.sleep,
                name="Upload",
            )
        except HTTPStatusError as e:
            raise classify_upload_error(e) from e
        except ServerError as e:
            raise UploadError(f"Upload failed: {e.message}", status=e.status, retryable=True) from e
        except NetworkError as e:
            raise UploadError(f"Upload failed: {e.message}", hints=NETWORK_HINTS, retryable=True) from e

        self._log(f"Upload completed in {time.monotonic() - started:.1f}s")
        return response

    def _persist_identity(self, project_store: ProjectStore, plan: DeployPlan, data: dict) -> DeploymentIdentity:
        build_id = data.get("buildId")
        try:
            identity = DeploymentIdentity(
                slug=data.get("slug") or plan.slug,
                url=data["url"],
                build_id=str(build_id) if build_id is not None else None,
            )
        except PydanticValidationError as e:
            raise UploadError(f"Server returned an unusable deployment identity: {e}") from e

        try:
            project_store.record_deployment(identity)
        except ProjectConfigError as e:
            self._log(f"Could not save deployment info to forgekit.json: {e.message}", "warning")
        else:
            self._log(f"Saved deployment '{identity.slug}' to forgekit.json")
        return identity


def classify_upload_error(error: HTTPStatusError) -> ForgeError:
    """Map a 4xx upload response to a permanent, user-facing error."""
    if error.status == 401:
        return AuthenticationError("Authentication expired. Try running: forge login")
    if error.status == 413:
        return UploadError("Project bundle is too large.", status=413, hints=TOO_LARGE_HINTS)
    if error.status == 429:
        return UploadError(
            "Rate limit exceeded. Please wait a few minutes and try again.", status=429
        )
    detail = ""
    if isinstance(error.body, dict):
        detail = error.body.get("detail") or error.body.get("message") or ""
    message = f"Server returned status {error.status}"
    return UploadError(f"{message}: {detail}" if detail else message, status=error.status)
