"""Dockerfile synthesis for projects that do not ship their own."""
from pathlib import Path
from typing import Dict, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from forgekit.core.logger import get_logger

logger = get_logger(__name__)

TEMPLATES_DIR = Path(__file__).parent.parent / "templates"
PROFILES_FILE = "dockerfiles.yml"
TEMPLATE_NAME = "Dockerfile.j2"

PROFILE_DEFAULTS = {
    "install": None,
    "build": None,
    "copy": None,
    "env": {},
}


def load_profiles(templates_dir: Optional[Path] = None) -> Dict[str, dict]:
    """Load the container profiles, resolving aliases.

    Returns:
        Mapping of stack name to profile dict
    """
    templates_dir = templates_dir or TEMPLATES_DIR
    with open(templates_dir / PROFILES_FILE) as f:
        data = yaml.safe_load(f) or {}

    aliases = data.pop("aliases", {}) or {}
    for alias, target in aliases.items():
        if target in data:
            data[alias] = data[target]
    return data


def primary_stack(stack: str) -> str:
    """Normalize a stack label ("nextjs + supabase" -> "nextjs")."""
    return stack.split("+")[0].strip().lower()


def has_profile(stack: Optional[str]) -> bool:
    return bool(stack) and primary_stack(stack) in load_profiles()


def generate_dockerfile(stack: str, templates_dir: Optional[Path] = None) -> Optional[str]:
    """Render a hardened Dockerfile for ``stack``.

    Returns:
        Dockerfile text, or None when the stack has no profile
    """
    templates_dir = templates_dir or TEMPLATES_DIR
    name = primary_stack(stack)
    profile = load_profiles(templates_dir).get(name)
    if profile is None:
        logger.warning(f"Unsupported stack for Dockerfile generation: {name}")
        return None

    env = Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    context = {**PROFILE_DEFAULTS, **profile, "stack": name}
    try:
        return env.get_template(TEMPLATE_NAME).render(**context)
    except TemplateError as e:
        logger.error(f"Failed to render Dockerfile for {name}: {e}")
        raise


def materialize_dockerfile(project_root: Path, stack: Optional[str]) -> Optional[Path]:
    """Write a Dockerfile into ``project_root`` if it has none.

    Returns:
        Path of the file written by this call, or None when the project
        already had one or the stack is unknown. Callers own the returned
        file and should remove it after bundling.
    """
    dockerfile = Path(project_root) / "Dockerfile"
    if dockerfile.exists():
        logger.debug("Using existing Dockerfile")
        return None
    if not stack:
        return None

    content = generate_dockerfile(stack)
    if content is None:
        return None

    dockerfile.write_text(content)
    logger.debug(f"Generated Dockerfile for {primary_stack(stack)}")
    return dockerfile
