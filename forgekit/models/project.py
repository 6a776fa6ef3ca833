"""Project deployment record models (``forgekit.json``)."""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SLUG_PATTERN = re.compile(r'^[a-z0-9-]+$')

# Top-level keys written by older CLI versions
LEGACY_STACK_KEYS = ('frontend', 'backend', 'ui', 'database')
LEGACY_BUILD_KEYS = {'buildDir': 'buildDir', 'buildCommand': 'command'}


class StackDescriptor(BaseModel):
    """Frameworks chosen at scaffold time."""

    model_config = ConfigDict(extra='allow')

    frontend: Optional[str] = None
    backend: Optional[str] = None
    ui: Optional[str] = None
    database: Optional[str] = None


class BuildSettings(BaseModel):
    """Build output location and optional command override."""

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    build_dir: Optional[str] = Field(None, alias='buildDir')
    command: Optional[str] = None


class DeploymentIdentity(BaseModel):
    """Identity returned by the server after a successful deploy.

    Its presence in the project record turns the next deploy into a redeploy.
    """

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    slug: str
    url: str
    last_deployed: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        alias='lastDeployed',
    )
    build_id: Optional[str] = Field(None, alias='buildId')

    @field_validator('slug')
    @classmethod
    def validate_slug(cls, v):
        """Slugs are lowercase letters, digits and hyphens."""
        if not SLUG_PATTERN.match(v):
            raise ValueError(
                f"Deployment slug '{v}' is invalid. "
                "Must be lowercase letters, numbers, and hyphens only."
            )
        return v


class ProjectConfig(BaseModel):
    """Complete project deployment record.

    Unknown keys are kept so that fields owned by other tools survive a
    round trip through the deploy agent.
    """

    model_config = ConfigDict(extra='allow', populate_by_name=True)

    slug: Optional[str] = None
    project_name: Optional[str] = Field(None, alias='projectName')
    stack: StackDescriptor = Field(default_factory=StackDescriptor)
    build: BuildSettings = Field(default_factory=BuildSettings)
    deployment: Optional[DeploymentIdentity] = None

    @model_validator(mode='before')
    @classmethod
    def migrate_legacy_layout(cls, data: Any) -> Any:
        """Move flat ``frontend``/``backend``/``buildDir`` keys into the nested layout."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        stack = dict(data.get('stack') or {})
        for key in LEGACY_STACK_KEYS:
            if key in data:
                stack.setdefault(key, data.pop(key))
        if stack:
            data['stack'] = stack

        build = dict(data.get('build') or {})
        for legacy, nested in LEGACY_BUILD_KEYS.items():
            if legacy in data:
                build.setdefault(nested, data.pop(legacy))
        if build:
            data['build'] = build

        return data

    @property
    def is_redeploy(self) -> bool:
        """True when a previous deploy recorded an identity."""
        return self.deployment is not None

    @property
    def frontend(self) -> Optional[str]:
        return self.stack.frontend

    @property
    def backend(self) -> Optional[str]:
        return self.stack.backend

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the on-disk camelCase keys, omitting unset values."""
        return self.model_dump(by_alias=True, exclude_none=True)
