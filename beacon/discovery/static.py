"""Static target list — the endpoint is a comma-separated address list."""

from __future__ import annotations

from typing import Iterable

from beacon.convert import DiscoveryRequest
from beacon.discovery.base import Discoverer
from beacon.targets import Target, TargetGroup


class StaticDiscoverer(Discoverer):
    requires_endpoint = True

    def __init__(self, groups: Iterable[TargetGroup]) -> None:
        self._groups = list(groups)

    @classmethod
    def from_request(cls, request: DiscoveryRequest) -> StaticDiscoverer:
        addresses = [a.strip() for a in request.endpoint.split(",") if a.strip()]
        targets = []
        for address in addresses:
            if ":" not in address:
                address = f"{address}:{request.port}"
            targets.append(Target(address=address))
        return cls([TargetGroup(source="static:0", targets=tuple(targets))])

    async def poll(self) -> list[TargetGroup]:
        return list(self._groups)
