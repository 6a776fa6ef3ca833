"""Deployment bundle assembly.

Selects the files to ship from a list of candidate paths, applying the
default exclusions, the project's ``.dockerignore`` and a few framework
re-inclusions, then writes them to a gzip-compressed tar archive. Size
estimation and archiving share :meth:`BundleBuilder.collect_files`, so the
preview and the upload always agree on the file set.
"""
import json
import os
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import pathspec

from forgekit.core.errors import BundleError
from forgekit.core.logger import get_logger

logger = get_logger(__name__)

IGNORE_FILE = ".dockerignore"

# Always excluded, regardless of .dockerignore
DEFAULT_EXCLUSIONS = [
    "node_modules",
    ".git",
    ".gitignore",
    ".gitattributes",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
    "npm-debug.log*",
    "yarn-debug.log*",
    "yarn-error.log*",
    "pnpm-debug.log*",
    ".npm",
    ".yarn",
    ".pnpm",
    ".env",
    ".env.*",
    "*.tmp",
    "*.temp",
    "coverage",
    ".nyc_output",
    ".coverage",
    "__pycache__",
    ".pytest_cache",
    "test",
    "tests",
    "__tests__",
    "*.test.js",
    "*.test.ts",
    "*.spec.js",
    "*.spec.ts",
    ".eslintrc*",
    ".prettierrc*",
    "jest.config.*",
    "webpack.config.*",
    "vite.config.*",
    "rollup.config.*",
    ".babelrc*",
    "*.md",
    "LICENSE",
    "LICENSE.txt",
    ".vscode",
    ".idea",
    "*.iml",
    ".editorconfig",
]

# Config files a containerised Next.js build needs even though they are excluded by default
NEXTJS_INCLUSIONS = [
    "tsconfig.json",
    "next.config.*",
    "tailwind.config.*",
    "postcss.config.*",
    "next-env.d.ts",
]


def read_ignore_file(project_root: Path, name: str = IGNORE_FILE) -> List[str]:
    """Read ignore patterns, skipping blank lines and comments."""
    ignore_path = Path(project_root) / name
    if not ignore_path.exists():
        return []

    try:
        content = ignore_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {name}: {e}")
        return []

    return [
        line.strip()
        for line in content.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def framework_inclusions(project_root: Path) -> List[str]:
    """Patterns that override default exclusions for the project's framework."""
    root = Path(project_root)
    config_path = root / "forgekit.json"
    if not config_path.exists():
        return []

    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []

    stack = config.get("stack") if isinstance(config, dict) else None
    frontend = stack.get("frontend") if isinstance(stack, dict) else config.get("frontend")
    if frontend == "nextjs" and (root / "Dockerfile").exists():
        return list(NEXTJS_INCLUSIONS)
    return []


@dataclass
class BundleEstimate:
    """Size preview of a bundle."""

    bytes: int
    file_count: int
    files: List[str] = field(default_factory=list)

    @property
    def megabytes(self) -> float:
        return self.bytes / 1024 / 1024


class BundleBuilder:
    """Filter candidate paths and archive them."""

    def __init__(self, project_root: Path, extra_exclusions: Optional[Iterable[str]] = None):
        """Initialize builder.

        Args:
            project_root: Directory all candidates are relative to
            extra_exclusions: Additional patterns (e.g. the archive's own name)
        """
        self.project_root = Path(project_root).resolve()
        self.ignore_patterns = read_ignore_file(self.project_root)
        self.inclusion_patterns = framework_inclusions(self.project_root)
        self.exclusion_patterns = (
            DEFAULT_EXCLUSIONS + self.ignore_patterns + list(extra_exclusions or [])
        )
        # Separate specs: a "!" line in .dockerignore must not re-include a default exclusion
        self._defaults = pathspec.PathSpec.from_lines("gitwildmatch", DEFAULT_EXCLUSIONS)
        self._project = pathspec.PathSpec.from_lines(
            "gitwildmatch", self.ignore_patterns + list(extra_exclusions or [])
        )
        self._include = pathspec.PathSpec.from_lines("gitwildmatch", self.inclusion_patterns)

        logger.debug(
            f"Exclusion patterns: {len(self.exclusion_patterns)} "
            f"({len(DEFAULT_EXCLUSIONS)} default, {len(self.ignore_patterns)} from {IGNORE_FILE}); "
            f"framework inclusions: {len(self.inclusion_patterns)}"
        )

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        """Check one project-relative POSIX path against the pattern sets."""
        path = relative_path.strip("/")
        if self._include.match_file(path):
            return False
        return any(
            spec.match_file(path) or (is_dir and spec.match_file(path + "/"))
            for spec in (self._defaults, self._project)
        )

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.project_root).as_posix()

    def collect_files(self, candidates: Iterable[str]) -> List[str]:
        """Resolve candidates to the sorted list of files to ship.

        Directories matching an exclusion are pruned without being walked;
        files inside included directories are filtered one by one.

        Returns:
            Sorted, de-duplicated project-relative POSIX paths
        """
        selected = set()

        for candidate in candidates:
            full_path = (self.project_root / candidate).resolve()
            try:
                relative = self._relative(full_path)
            except ValueError:
                logger.warning(f"Skipping path outside project root: {candidate}")
                continue

            if not full_path.exists():
                logger.debug(f"Skipping non-existent path: {candidate}")
                continue

            if full_path.is_file():
                if self.is_excluded(relative):
                    logger.debug(f"Excluding file: {relative}")
                else:
                    selected.add(relative)
                continue

            if relative != "." and self.is_excluded(relative, is_dir=True):
                logger.debug(f"Excluding directory: {relative}")
                continue

            selected.update(self._walk(full_path))

        return sorted(selected)

    def _walk(self, directory: Path) -> List[str]:
        found = []
        for dirpath, dirnames, filenames in os.walk(directory):
            current = Path(dirpath)
            kept_dirs = []
            for name in sorted(dirnames):
                relative = self._relative(current / name)
                if (current / name).is_symlink() or self.is_excluded(relative, is_dir=True):
                    logger.debug(f"  Filtering out: {relative}/")
                    continue
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                relative = self._relative(current / name)
                if self.is_excluded(relative):
                    logger.debug(f"  Filtering out: {relative}")
                    continue
                found.append(relative)
        return found

    def estimate_size(self, candidates: Iterable[str]) -> BundleEstimate:
        """Total size and count of the files that would be bundled."""
        files = self.collect_files(candidates)
        total = 0
        for relative in files:
            try:
                total += (self.project_root / relative).stat().st_size
            except OSError:
                continue
        return BundleEstimate(bytes=total, file_count=len(files), files=files)

    def build_archive(self, candidates: Iterable[str], archive_path: Optional[Path] = None) -> Path:
        """Write the filtered file set to a ``.tar.gz``.

        Args:
            candidates: Project-relative files/directories to consider
            archive_path: Destination; a temp file is created when omitted

        Returns:
            Path to the archive

        Raises:
            BundleError: Nothing left after filtering, or the write failed
        """
        files = self.collect_files(candidates)
        if not files:
            raise BundleError(
                "No files to bundle after applying exclusion filters",
                hints=[
                    "Check that the build directory contains output",
                    f"Review the patterns in {IGNORE_FILE}",
                ],
            )

        if archive_path is None:
            fd, name = tempfile.mkstemp(prefix="forgekit-bundle-", suffix=".tar.gz")
            os.close(fd)
            archive_path = Path(name)
        archive_path = Path(archive_path)

        try:
            with tarfile.open(archive_path, "w:gz") as tar:
                for relative in files:
                    tar.add(
                        self.project_root / relative,
                        arcname=relative,
                        recursive=False,
                        filter=_normalize_owner,
                    )
        except (OSError, tarfile.TarError) as e:
            archive_path.unlink(missing_ok=True)
            raise BundleError(f"Failed to create deployment bundle: {e}") from e

        logger.debug(f"Bundled {len(files)} files into {archive_path}")
        return archive_path


def _normalize_owner(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info
