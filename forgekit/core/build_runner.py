"""Build command detection and execution."""
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from forgekit.core.config import ForgeConfig
from forgekit.core.errors import BuildError
from forgekit.core.logger import get_logger
from forgekit.core.retry import retry_call

logger = get_logger(__name__)

# Checked in order; the first lockfile found decides the package manager
LOCKFILES = [
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
]

BUILD_COMMANDS = {
    "bun": ["bun", "run", "build"],
    "pnpm": ["pnpm", "build"],
    "yarn": ["yarn", "build"],
    "npm": ["npm", "run", "build"],
}

# Substring of the build output -> remediation hint
BUILD_ERROR_HINTS = {
    "Missing script": 'Your package.json is missing a "build" script. Add one to the "scripts" section.',
    "Module not found": "Some dependencies are missing. Try running: npm install",
    "Cannot find module": "Some dependencies are missing. Try running: npm install",
    "Permission denied": "Permission denied. Try running with elevated permissions or check file ownership.",
    "EACCES": "Permission denied. Try running with elevated permissions or check file ownership.",
    "ENOENT": "Command not found. Make sure all required tools are installed.",
    "command not found": "Command not found. Make sure all required tools are installed.",
}

GENERIC_BUILD_HINTS = [
    "Make sure all dependencies are installed: npm install",
    "Try building locally first to see the full error",
    "Use --verbose for more detailed output",
]


def detect_package_manager(project_root: Path) -> str:
    """Return the package manager implied by the project's lockfile."""
    root = Path(project_root)
    for lockfile, manager in LOCKFILES:
        if (root / lockfile).exists():
            logger.debug(f"Detected {lockfile}, using {manager}")
            return manager
    logger.debug("No lockfile found, using npm")
    return "npm"


def build_hints(output: str) -> List[str]:
    """Remediation hints for a failed build, most specific first."""
    hints = []
    for marker, hint in BUILD_ERROR_HINTS.items():
        if marker in output and hint not in hints:
            hints.append(hint)
    return hints + GENERIC_BUILD_HINTS


@dataclass
class BuildAttempt:
    """Captured output of one build attempt."""

    attempt: int
    returncode: Optional[int]
    stdout: str
    stderr: str


@dataclass
class BuildResult:
    command: str
    stdout: str
    stderr: str
    attempts: int


class _AttemptFailed(Exception):
    def __init__(self, attempt: BuildAttempt):
        super().__init__(attempt.stderr.strip() or f"exit code {attempt.returncode}")
        self.attempt = attempt


class BuildRunner:
    """Run the project's build command with bounded retries."""

    def __init__(
        self,
        config: ForgeConfig,
        runner: Callable = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize runner.

        Args:
            config: Supplies the attempt count and base delay
            runner: ``subprocess.run`` compatible callable (injected in tests)
            sleep: Sleep function used between attempts
        """
        self.config = config
        self.runner = runner
        self.sleep = sleep

    def resolve_command(self, project_root: Path, configured: Optional[str] = None) -> List[str]:
        """Command line to run: the configured command, else the lockfile's manager."""
        if configured:
            return shlex.split(configured)
        return list(BUILD_COMMANDS[detect_package_manager(project_root)])

    def run(
        self,
        project_root: Path,
        configured: Optional[str] = None,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ) -> BuildResult:
        """Run the build in ``project_root``.

        Returns:
            BuildResult of the successful attempt

        Raises:
            BuildError: The build failed on every attempt, or the command
                could not be found
        """
        argv = self.resolve_command(project_root, configured)
        command = shlex.join(argv)
        history: List[BuildAttempt] = []

        def attempt_build() -> BuildResult:
            number = len(history) + 1
            logger.debug(f"Running build (attempt {number}): {command}")
            completed = self.runner(
                argv,
                cwd=str(project_root),
                capture_output=True,
                text=True,
                check=False,
            )
            record = BuildAttempt(number, completed.returncode, completed.stdout or "", completed.stderr or "")
            if completed.returncode != 0:
                history.append(record)
                raise _AttemptFailed(record)
            return BuildResult(command, record.stdout, record.stderr, number)

        try:
            result = retry_call(
                attempt_build,
                max_attempts=self.config.build_attempts,
                delay=self.config.build_retry_delay,
                exceptions=(_AttemptFailed,),
                on_retry=on_retry,
                sleep=self.sleep,
                name="Build",
            )
        except FileNotFoundError as e:
            history.append(BuildAttempt(len(history) + 1, None, "", f"ENOENT: {e}"))
            raise BuildError(
                f"Build failed: command not found ({argv[0]})",
                command=command,
                attempts=history,
                hints=build_hints("ENOENT"),
            ) from e
        except _AttemptFailed as e:
            output = "\n".join(a.stdout + "\n" + a.stderr for a in history)
            raise BuildError(
                f"Build failed after {len(history)} attempts",
                command=command,
                attempts=history,
                hints=build_hints(output),
            ) from e

        if result.stderr.strip():
            logger.debug(f"Build warnings: {result.stderr.strip()}")
        return result
