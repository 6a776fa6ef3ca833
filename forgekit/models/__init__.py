"""Data models for ForgeKit."""
from forgekit.models.project import (
    BuildSettings,
    DeploymentIdentity,
    ProjectConfig,
    StackDescriptor,
)

__all__ = [
    'BuildSettings',
    'DeploymentIdentity',
    'ProjectConfig',
    'StackDescriptor',
]
