"""Core deployment services: credentials, transport, bundling, orchestration."""
