"""Dependency update job orchestration server."""

__version__ = "0.1.0"
