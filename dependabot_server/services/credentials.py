"""Registry-to-credential mapping for the updater proxy.

The proxy receives full credentials; the updater only ever sees the metadata
produced by :func:`make_credentials_metadata`.
"""

from __future__ import annotations

import re
from typing import Iterable
from typing import Mapping
from urllib.parse import urlparse

from dependabot_server.errors import ConfigurationError
from dependabot_server.schemas import DependabotRegistry

Credential = dict[str, str]

PLACEHOLDER_PATTERN = re.compile(r"\$\{\{\s*([a-zA-Z_]+[a-zA-Z0-9_-]*)\s*\}\}")
SENSITIVE_KEYS = ("username", "token", "password", "key", "auth-key")

# Registry types whose 'url' is replaced by a derived key
REGISTRY_KEY_TYPES = ("docker_registry", "npm_registry")
HOST_KEY_TYPES = ("terraform_registry", "composer_repository")
URL_DROPPED_TYPES = ("docker_registry", "npm_registry", "terraform_registry", "python_index")


def convert_placeholder(value: str | None, secrets: Mapping[str, str]) -> str | None:
    """Replace ``${{ NAME }}`` occurrences with secrets looked up case-insensitively.

    Unknown names are left as written.
    """
    if value is None or not value.strip():
        return value

    lookup = {name.lower(): secret for name, secret in secrets.items()}

    def _replace(match: re.Match) -> str:
        return lookup.get(match.group(1).lower(), match.group(0))

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def _put(values: Credential, key: str, value: str | None) -> None:
    if value:
        values[key] = value


def make_registry_credential(registry: DependabotRegistry, secrets: Mapping[str, str]) -> Credential:
    kind = registry.type.replace("-", "_")
    values: Credential = {"type": kind}

    if kind == "hex_organization" and not registry.organization:
        raise ConfigurationError("Registries of type 'hex-organization' require 'organization'")
    if kind == "hex_repository" and not registry.repo:
        raise ConfigurationError("Registries of type 'hex-repository' require 'repo'")

    _put(values, "organization", registry.organization)
    _put(values, "repo", registry.repo)
    _put(values, "auth-key", registry.auth_key)
    _put(values, "public-key-fingerprint", registry.public_key_fingerprint)
    _put(values, "username", convert_placeholder(registry.username, secrets))
    _put(values, "password", convert_placeholder(registry.password, secrets))
    _put(values, "key", convert_placeholder(registry.key, secrets))
    _put(values, "token", convert_placeholder(registry.token, secrets))
    _put(values, "replaces-base", "true" if registry.replaces_base else None)

    if registry.url:
        parsed = urlparse(registry.url)
        if parsed.scheme and parsed.hostname:
            if kind in REGISTRY_KEY_TYPES:
                path = parsed.path + (f"?{parsed.query}" if parsed.query else "")
                values["registry"] = f"{parsed.hostname}{path}".rstrip("/")
            if kind in HOST_KEY_TYPES:
                values["host"] = parsed.hostname

    if kind == "python_index":
        _put(values, "index-url", registry.url)
    if kind not in URL_DROPPED_TYPES:
        _put(values, "url", registry.url)

    return values


def make_credentials(
    registries: Iterable[DependabotRegistry],
    secrets: Mapping[str, str],
    *,
    hostname: str,
    token: str,
    github_token: str | None = None,
) -> list[Credential]:
    """Credentials in proxy order: project git source, GitHub, then registries."""
    credentials: list[Credential] = [
        {"type": "git_source", "host": hostname, "username": "x-access-token", "password": token},
    ]
    if github_token and github_token.strip():
        credentials.append(
            {"type": "git_source", "host": "github.com", "username": "x-access-token", "password": github_token}
        )

    for registry in registries:
        credentials.append(make_registry_credential(registry, secrets))
    return credentials


def make_credentials_metadata(credentials: Iterable[Mapping[str, str]]) -> list[Credential]:
    return [{k: v for k, v in cred.items() if k.lower() not in SENSITIVE_KEYS} for cred in credentials]
