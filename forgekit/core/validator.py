"""Deploy readiness checks and build output verification."""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from forgekit.core.errors import ProjectConfigError, ValidationError
from forgekit.core.logger import get_logger
from forgekit.core.project_store import ProjectStore
from forgekit.models.project import ProjectConfig

logger = get_logger(__name__)

MB = 1024 * 1024
SIZE_WARNING_BYTES = 100 * MB
SIZE_LIMIT_BYTES = 500 * MB

ENV_FILES = ['.env', '.env.local', '.env.production']

# At least one of these must exist for the given frontend
FRAMEWORK_CONFIG_FILES = {
    'nextjs': ['next.config.ts', 'next.config.js', 'next.config.mjs'],
    'react-vite': ['vite.config.ts', 'vite.config.js'],
    'vue-vite': ['vite.config.ts', 'vite.config.js'],
    'sveltekit': ['svelte.config.js'],
    'astro': ['astro.config.mjs', 'astro.config.js'],
    'angular': ['angular.json'],
}

STATIC_ENTRY_FRAMEWORKS = {'react-vite', 'vue-vite', 'sveltekit', 'astro', 'angular'}


@dataclass
class ValidationReport:
    """Outcome of a set of checks."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    info: List[str] = field(default_factory=list)
    project: Optional[ProjectConfig] = None

    @property
    def valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self, message: str) -> None:
        """Raise ValidationError listing every error, if there are any."""
        if self.errors:
            raise ValidationError(message, self.errors, self.warnings)


def _read_package_json(path: Path, report: ValidationReport, label: str) -> Optional[dict]:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        report.errors.append(f"{label} is invalid JSON: {e}")
        return None
    return data if isinstance(data, dict) else {}


class DeployValidator:
    """Validates a project before and after the build.

    Every check appends to the report; nothing stops at the first problem.
    """

    def __init__(self, project_root: Path, store: Optional[ProjectStore] = None):
        self.project_root = Path(project_root)
        self.store = store or ProjectStore(self.project_root)

    def check_readiness(self, skip_build: bool = False, build_dir: Optional[str] = None) -> ValidationReport:
        """Run the pre-build readiness checks.

        Args:
            skip_build: Build script is only required when the build will run
            build_dir: Build directory override

        Returns:
            ValidationReport with the loaded project config attached
        """
        report = ValidationReport()

        try:
            project = self.store.load()
        except ProjectConfigError as e:
            report.errors.append(e.message)
            return report
        report.project = project

        self._check_build_script(report, skip_build)
        self._check_build_dir(report, project, build_dir)
        self._check_framework_files(report, project)
        self._check_backend(report, project)
        self._check_env_files(report)

        logger.debug(
            f"Readiness: {len(report.errors)} errors, {len(report.warnings)} warnings"
        )
        return report

    def _check_build_script(self, report: ValidationReport, skip_build: bool) -> None:
        pkg_path = self.project_root / 'package.json'
        if not pkg_path.exists():
            if not skip_build:
                report.errors.append('package.json not found in project root')
            return

        pkg = _read_package_json(pkg_path, report, 'package.json')
        if pkg is None:
            return

        build_script = (pkg.get('scripts') or {}).get('build')
        if build_script:
            report.info.append(f"Build command: {build_script}")
        elif not skip_build:
            report.errors.append('package.json missing "build" script required for deployment')

    def _check_build_dir(self, report: ValidationReport, project: ProjectConfig, override: Optional[str]) -> None:
        build_dir = self.store.resolve_build_dir(project, override)
        build_path = self.project_root / build_dir

        if not build_path.exists():
            report.warnings.append(f"Build directory {build_dir} doesn't exist. Will be created during build.")
        elif build_path.is_dir() and not any(build_path.iterdir()):
            report.warnings.append(
                f"Build directory {build_dir} is empty. Run build first or use --skip-build flag."
            )
        else:
            report.info.append(f"Build directory: {build_dir}")

    def _check_framework_files(self, report: ValidationReport, project: ProjectConfig) -> None:
        expected = FRAMEWORK_CONFIG_FILES.get(project.frontend or '')
        if not expected:
            return
        if not any((self.project_root / name).exists() for name in expected):
            report.warnings.append(
                f"No {project.frontend} config file found. Expected one of: {', '.join(expected)}"
            )

    def _check_backend(self, report: ValidationReport, project: ProjectConfig) -> None:
        if not project.backend:
            return

        backend_dir = self.project_root / 'backend'
        if not backend_dir.is_dir():
            report.errors.append('Backend directory not found')
            return

        pkg_path = backend_dir / 'package.json'
        if not pkg_path.exists():
            # Non-Node backends (Python, Go, ...) have no package.json
            report.info.append(f"Backend: {project.backend}")
            return

        pkg = _read_package_json(pkg_path, report, 'Backend package.json')
        if pkg is not None and not (pkg.get('scripts') or {}).get('start'):
            report.errors.append('Backend package.json missing "start" script')

    def _check_env_files(self, report: ValidationReport) -> None:
        found = [name for name in ENV_FILES if (self.project_root / name).exists()]
        if not found:
            return
        report.info.append(f"Environment files found: {', '.join(found)}")

        gitignore = self.project_root / '.gitignore'
        if not gitignore.exists():
            return
        ignored = gitignore.read_text(errors='replace')
        unprotected = [name for name in found if name not in ignored]
        if unprotected:
            report.warnings.append(f"Sensitive files not in .gitignore: {', '.join(unprotected)}")

    def verify_build_output(self, build_dir: str, frontend: Optional[str] = None) -> ValidationReport:
        """Check the build output before it is bundled.

        Args:
            build_dir: Build directory relative to the project root
            frontend: Frontend framework, for entry-point checks

        Returns:
            ValidationReport
        """
        report = ValidationReport()
        build_path = self.project_root / build_dir

        if not build_path.exists():
            report.errors.append(f"Build directory '{build_dir}' does not exist")
            return report
        if not build_path.is_dir():
            report.errors.append(f"Build path '{build_dir}' is not a directory")
            return report
        if not any(build_path.iterdir()):
            report.errors.append(f"Build directory '{build_dir}' is empty")
            return report

        self._check_entry_points(report, build_path, frontend)
        self._check_size(report, build_path)
        self._check_common_issues(report, build_path)
        return report

    def _check_entry_points(self, report: ValidationReport, build_path: Path, frontend: Optional[str]) -> None:
        if frontend == 'nextjs':
            if (build_path / 'standalone').exists():
                report.info.append('Next.js standalone build detected')
            elif (build_path / 'static').exists():
                report.info.append('Next.js static build detected')
            else:
                report.warnings.append('Next.js build output structure not recognized')
        elif frontend in STATIC_ENTRY_FRAMEWORKS:
            if (build_path / 'index.html').exists():
                report.info.append('Static index.html found')
            else:
                report.warnings.append(f"No index.html found in {frontend} build output")

    def _check_size(self, report: ValidationReport, build_path: Path) -> None:
        total = 0
        for dirpath, _, filenames in os.walk(build_path):
            for name in filenames:
                try:
                    total += os.path.getsize(os.path.join(dirpath, name))
                except OSError:
                    continue

        size_mb = total / MB
        report.info.append(f"Total build size: {size_mb:.2f} MB")
        if total > SIZE_LIMIT_BYTES:
            report.errors.append(
                f"Build size ({size_mb:.2f} MB) exceeds deployment limits. Please optimize your build."
            )
        elif total > SIZE_WARNING_BYTES:
            report.warnings.append(f"Large build size ({size_mb:.2f} MB). Consider optimizing your build.")

    def _check_common_issues(self, report: ValidationReport, build_path: Path) -> None:
        found_node_modules = found_env = found_logs = False
        for dirpath, dirnames, filenames in os.walk(build_path):
            if 'node_modules' in dirnames:
                found_node_modules = True
                dirnames.remove('node_modules')
            for name in filenames:
                if name == '.env' or name.startswith('.env.'):
                    found_env = True
                elif name.endswith('.log'):
                    found_logs = True

        if found_node_modules:
            report.warnings.append('Build contains node_modules directory - this should not be deployed')
        if found_env:
            report.warnings.append('Build contains .env files - ensure secrets are not included')
        if found_logs:
            report.warnings.append('Build contains log files - consider excluding these')
