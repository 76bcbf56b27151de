"""HTTP-based discovery — fetches a JSON target list from a URL.

A single :class:`httpx.AsyncClient` is reused across polls for connection
pooling and keep-alive; it is closed when the discoverer is retired.
"""

from __future__ import annotations

import logging

import httpx

from beacon.config import HTTPClientConfig
from beacon.convert import DiscoveryRequest
from beacon.discovery.base import Discoverer
from beacon.errors import PollError
from beacon.targets import TargetGroup, parse_target_groups

logger = logging.getLogger(__name__)


class HTTPDiscoverer(Discoverer):
    requires_endpoint = True

    def __init__(
        self,
        url: str,
        http_client_config: HTTPClientConfig | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        kwargs = (http_client_config or HTTPClientConfig()).client_kwargs()
        if transport is not None:
            kwargs.pop("proxy", None)
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(timeout=timeout, **kwargs)

    @classmethod
    def from_request(cls, request: DiscoveryRequest) -> HTTPDiscoverer:
        return cls(request.endpoint, request.http_client_config)

    async def poll(self) -> list[TargetGroup]:
        try:
            response = await self._client.get(self.url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise PollError(f"cannot reach {self.url}: {exc}") from exc
        if response.status_code != 200:
            raise PollError(f"{self.url} returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise PollError(f"invalid JSON from {self.url}: {exc}") from exc
        return parse_target_groups(
            data,
            source_prefix=self.url,
            extra_labels={"__meta_url": self.url},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
