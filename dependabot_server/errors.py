"""Exception types raised across the orchestration server."""

from __future__ import annotations


class DependabotError(Exception):
    """Base class for errors raised by this package."""


class ConfigurationError(DependabotError):
    """A server setting, registry entry or job input cannot be used as given."""


class ConfigFileValidationError(DependabotError):
    """A repository's dependabot.yml failed to parse or validate."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ProviderError(DependabotError):
    """The source-control provider rejected a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BackendError(DependabotError):
    """The container execution backend returned an unexpected response."""
