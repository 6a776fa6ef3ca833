"""Environment variables injected into a deployment.

Only public build-time variables are forwarded automatically: names the
source references through ``process.env.X`` / ``import.meta.env.X`` that
carry an allowed prefix and have a value locally. Anything else must be
passed explicitly with ``--env KEY=VALUE``.
"""
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set

from dotenv import dotenv_values

from forgekit.core.errors import ValidationError
from forgekit.core.logger import get_logger

logger = get_logger(__name__)

ENV_FILES = ['.env', '.env.local', '.env.production']
ALLOWED_PREFIXES = ('VITE_', 'NEXT_PUBLIC_')

CONFIG_GLOBS = ['next.config.*', 'vite.config.*']
SOURCE_GLOB = 'src/**/*'
CONFIG_SUFFIXES = {'.js', '.ts', '.mjs', '.cjs'}
SOURCE_SUFFIXES = {'.js', '.jsx', '.ts', '.tsx'}

REFERENCE_PATTERNS = [
    re.compile(r'process\.env\.([A-Z0-9_]+)'),
    re.compile(r'import\.meta\.env\.([A-Z0-9_]+)'),
]

ASSIGNMENT_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def load_env_files(project_root: Path) -> Dict[str, str]:
    """Merge ``.env``, ``.env.local`` and ``.env.production`` (later files win)."""
    combined: Dict[str, str] = {}
    for name in ENV_FILES:
        path = Path(project_root) / name
        if not path.exists():
            continue
        values = dotenv_values(path)
        combined.update({k: v for k, v in values.items() if v is not None})
        logger.debug(f"Loaded {len(values)} variables from {name}")
    return combined


def is_allowed(name: str) -> bool:
    return name.startswith(ALLOWED_PREFIXES)


def _source_files(project_root: Path) -> List[Path]:
    root = Path(project_root)
    files = []
    for pattern in CONFIG_GLOBS:
        files.extend(p for p in root.glob(pattern) if p.suffix in CONFIG_SUFFIXES)
    files.extend(
        p for p in root.glob(SOURCE_GLOB)
        if p.is_file() and p.suffix in SOURCE_SUFFIXES and 'node_modules' not in p.parts
    )
    return sorted(files)


def find_env_references(project_root: Path) -> Set[str]:
    """Names referenced as ``process.env.X`` or ``import.meta.env.X``."""
    names: Set[str] = set()
    for path in _source_files(project_root):
        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError):
            continue
        for pattern in REFERENCE_PATTERNS:
            names.update(pattern.findall(content))
    return names


def detect_env_vars(project_root: Path, available: Mapping[str, str]) -> List[str]:
    """Referenced public variable names that have a value in ``available``."""
    return sorted(
        name for name in find_env_references(project_root)
        if name in available and is_allowed(name)
    )


def parse_env_assignments(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` strings.

    Raises:
        ValidationError: If any entry is malformed (all bad entries are listed)
    """
    parsed: Dict[str, str] = {}
    errors = []
    for pair in pairs:
        key, sep, value = pair.partition('=')
        key = key.strip()
        if not sep or not ASSIGNMENT_PATTERN.match(key):
            errors.append(f"Invalid --env value '{pair}', expected KEY=VALUE")
            continue
        parsed[key] = value
    if errors:
        raise ValidationError("Invalid environment variables", errors)
    return parsed


def collect_deploy_env(
    project_root: Path,
    environ: Mapping[str, str],
    explicit: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Variables to send with the upload.

    Values from the process environment take precedence over env files;
    explicit assignments override both and bypass the prefix filter.
    """
    available = {**load_env_files(project_root), **environ}
    selected = {name: available[name] for name in detect_env_vars(project_root, available)}
    if explicit:
        selected.update(explicit)
    if selected:
        logger.debug(f"Injecting environment variables: {', '.join(sorted(selected))}")
    return selected
