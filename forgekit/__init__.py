"""ForgeKit deployment agent - package, authenticate, upload."""

__version__ = "1.0.10"
