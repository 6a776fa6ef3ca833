"""Persistence for the project deployment record (``forgekit.json``)."""
import json
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from forgekit.core.errors import ProjectConfigError
from forgekit.core.logger import get_logger
from forgekit.models.project import DeploymentIdentity, ProjectConfig

logger = get_logger(__name__)

CONFIG_FILENAME = "forgekit.json"

# Build output directory produced by each frontend framework
FRONTEND_BUILD_DIRS = {
    "react-vite": "dist",
    "vue-vite": "dist",
    "astro": "dist",
    "angular": "dist",
    "sveltekit": "build",
    "nextjs": ".next",
}

# Checked in order when nothing is configured
BUILD_DIR_GUESSES = ["dist", "build", ".next", "out"]


class ProjectStore:
    """Load and save the project deployment record.

    The record is read into a :class:`ProjectConfig` and written back
    atomically; keys this tool does not know about are preserved.
    """

    def __init__(self, project_root: Path):
        """Initialize store.

        Args:
            project_root: Directory containing forgekit.json
        """
        self.project_root = Path(project_root)
        self.config_file = self.project_root / CONFIG_FILENAME

    def exists(self) -> bool:
        return self.config_file.exists()

    def load(self) -> ProjectConfig:
        """Read and validate the record.

        Raises:
            ProjectConfigError: If the file is missing, unreadable or invalid
        """
        if not self.exists():
            raise ProjectConfigError(
                f"No {CONFIG_FILENAME} found in {self.project_root}",
                hints=["Run this command from a ForgeKit project root"],
            )

        try:
            with open(self.config_file, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ProjectConfigError(f"Invalid {CONFIG_FILENAME}: {e}") from e

        if not isinstance(data, dict):
            raise ProjectConfigError(f"Invalid {CONFIG_FILENAME}: expected a JSON object")

        try:
            project = ProjectConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ProjectConfigError(f"Invalid {CONFIG_FILENAME}: {e}") from e

        logger.debug(f"Loaded project config from {self.config_file}")
        return project

    def save(self, project: ProjectConfig) -> None:
        """Write the record atomically (write to temp, then rename).

        Raises:
            ProjectConfigError: If the file cannot be written
        """
        temp_file = self.config_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(project.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(temp_file, self.config_file)
        except OSError as e:
            temp_file.unlink(missing_ok=True)
            raise ProjectConfigError(f"Failed to save {CONFIG_FILENAME}: {e}") from e

        logger.debug(f"Saved project config to {self.config_file}")

    def record_deployment(self, identity: DeploymentIdentity) -> ProjectConfig:
        """Store the deployment identity so later deploys become redeploys.

        Returns:
            The updated project config
        """
        project = self.load()
        project.deployment = identity
        if not project.slug:
            project.slug = identity.slug
        self.save(project)
        return project

    def resolve_build_dir(self, project: Optional[ProjectConfig] = None, override: Optional[str] = None) -> str:
        """Pick the build output directory.

        Precedence: explicit override, configured ``build.buildDir``, the
        frontend framework's conventional directory, the first existing
        common output directory, then ``dist``.
        """
        if override:
            return override

        if project is not None:
            if project.build.build_dir:
                return project.build.build_dir
            framework_dir = FRONTEND_BUILD_DIRS.get(project.frontend or "")
            if framework_dir:
                return framework_dir

        for candidate in BUILD_DIR_GUESSES:
            if (self.project_root / candidate).is_dir():
                return candidate

        return "dist"
