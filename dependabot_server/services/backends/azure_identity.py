"""Managed identity access tokens for Azure Resource Manager and Log Analytics.

Inside Container Apps the platform exposes ``IDENTITY_ENDPOINT`` and
``IDENTITY_HEADER``; elsewhere the instance metadata service is used.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time

import httpx

logger = logging.getLogger(__name__)

IMDS_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"
REFRESH_MARGIN_SECONDS = 300


class ManagedIdentityCredential:
    def __init__(self, client_id: str | None = None, *, transport: httpx.AsyncBaseTransport | None = None):
        self.client_id = client_id
        self._transport = transport
        self._tokens: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get_token(self, resource: str) -> str:
        async with self._lock:
            cached = self._tokens.get(resource)
            if cached and cached[1] - REFRESH_MARGIN_SECONDS > time.time():
                return cached[0]

            token, expires_on = await self._fetch(resource)
            self._tokens[resource] = (token, expires_on)
            return token

    async def _fetch(self, resource: str) -> tuple[str, float]:
        endpoint = os.environ.get("IDENTITY_ENDPOINT")
        header = os.environ.get("IDENTITY_HEADER")
        if endpoint and header:
            url = endpoint
            params = {"resource": resource, "api-version": "2019-08-01"}
            headers = {"X-IDENTITY-HEADER": header}
        else:
            url = IMDS_ENDPOINT
            params = {"resource": resource, "api-version": "2018-02-01"}
            headers = {"Metadata": "true"}
        if self.client_id:
            params["client_id"] = self.client_id

        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            response = await client.get(url, params=params, headers=headers)
            response.raise_for_status()
            data = response.json()

        logger.debug("Acquired managed identity token for %s", resource)
        return data["access_token"], float(data.get("expires_on") or time.time() + 3600)
