"""Resolve image tags to digests through the registry HTTP API (no pull)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import httpx

from dependabot_server.errors import BackendError

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
MANIFEST_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str
    name: str  # as written, without the tag

    @classmethod
    def parse(cls, image: str) -> "ImageReference":
        name, tag = image, "latest"
        last = image.rsplit("/", 1)[-1]
        if ":" in last:
            name, tag = image.rsplit(":", 1)

        first, _, rest = name.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry, repository = DOCKER_HUB, name if rest else f"library/{name}"
        return cls(registry=registry, repository=repository, tag=tag, name=name)


def parse_bearer_challenge(header: str) -> dict[str, str]:
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return {}
    return dict(_CHALLENGE_PARAM.findall(params))


class RegistryResolver:
    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def resolve(self, image: str) -> str:
        if "@sha256:" in image:
            return image

        ref = ImageReference.parse(image)
        url = f"https://{ref.registry}/v2/{ref.repository}/manifests/{ref.tag}"
        headers = {"Accept": MANIFEST_TYPES}

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport, follow_redirects=True) as client:
            response = await client.head(url, headers=headers)
            if response.status_code == 401:
                challenge = parse_bearer_challenge(response.headers.get("www-authenticate", ""))
                if "realm" not in challenge:
                    raise BackendError(f"Registry {ref.registry} requires unsupported authentication")
                params = {k: v for k, v in challenge.items() if k in ("service", "scope")}
                params.setdefault("scope", f"repository:{ref.repository}:pull")
                token_response = await client.get(challenge["realm"], params=params)
                token_response.raise_for_status()
                token_data = token_response.json()
                token = token_data.get("token") or token_data.get("access_token")
                response = await client.head(url, headers={**headers, "Authorization": f"Bearer {token}"})

            response.raise_for_status()

        digest = response.headers.get("docker-content-digest")
        if not digest:
            raise BackendError(f"Registry {ref.registry} did not return a digest for {image}")
        logger.debug("Resolved %s to %s", image, digest)
        return f"{ref.name}@{digest}"
