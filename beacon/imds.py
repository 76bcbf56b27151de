"""EC2 instance-metadata (IMDSv2) client and region probe.

Uses httpx for async HTTP.  Every failure (unreachable endpoint, timeout,
non-2xx response) is raised as :class:`ResolutionError`; callers decide
whether that means "not applicable" or "configuration incomplete".
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

import httpx

from beacon.errors import ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://169.254.169.254"
DEFAULT_TIMEOUT = 1.0
TOKEN_TTL_SECONDS = 21600


class RegionProbe(Protocol):
    """Anything that can tell which region we are running in."""

    async def get_region(self) -> str: ...


class InstanceMetadataClient:
    """Thin async wrapper around the instance-metadata service.

    Opens a short-lived :class:`httpx.AsyncClient` per lookup; the
    metadata service is only consulted during validation, never on the
    polling path.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if endpoint is None:
            endpoint = os.environ.get("AWS_EC2_METADATA_SERVICE_ENDPOINT", DEFAULT_ENDPOINT)
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def get_metadata(self, path: str) -> str:
        """Return the text body of ``/latest/meta-data/<path>``."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            token = await self._get_token(client)
            url = f"{self.endpoint}/latest/meta-data/{path.lstrip('/')}"
            try:
                response = await client.get(url, headers={"X-aws-ec2-metadata-token": token})
            except httpx.HTTPError as exc:
                raise ResolutionError(f"instance metadata unreachable at {url}: {exc}") from exc
            if response.status_code != 200:
                raise ResolutionError(
                    f"instance metadata returned {response.status_code} for {path}"
                )
            return response.text.strip()

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        url = f"{self.endpoint}/latest/api/token"
        try:
            response = await client.put(
                url,
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
            )
        except httpx.HTTPError as exc:
            raise ResolutionError(f"instance metadata unreachable at {url}: {exc}") from exc
        if response.status_code != 200:
            raise ResolutionError(
                f"instance metadata token request returned {response.status_code}"
            )
        return response.text.strip()


class IMDSRegionProbe:
    """Region probe backed by ``placement/region`` in instance metadata."""

    def __init__(self, client: InstanceMetadataClient | None = None) -> None:
        self.client = client or InstanceMetadataClient()

    async def get_region(self) -> str:
        region = await self.client.get_metadata("placement/region")
        if not region:
            raise ResolutionError("instance metadata returned an empty region")
        logger.debug("Resolved region %s from instance metadata", region)
        return region
