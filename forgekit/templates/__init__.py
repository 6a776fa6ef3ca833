"""Dockerfile profiles and template."""
