"""File-based discovery — re-reads a JSON target list on every poll."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from beacon.convert import DiscoveryRequest
from beacon.discovery.base import Discoverer
from beacon.errors import PollError
from beacon.targets import TargetGroup, parse_target_groups

logger = logging.getLogger(__name__)


class FileDiscoverer(Discoverer):
    requires_endpoint = True

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @classmethod
    def from_request(cls, request: DiscoveryRequest) -> FileDiscoverer:
        return cls(request.endpoint)

    async def poll(self) -> list[TargetGroup]:
        data = await asyncio.to_thread(self._read)
        return parse_target_groups(
            data,
            source_prefix=str(self.path),
            extra_labels={"__meta_filepath": str(self.path)},
        )

    def _read(self) -> object:
        try:
            with open(self.path) as f:
                return json.load(f)
        except OSError as exc:
            raise PollError(f"cannot read {self.path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise PollError(f"invalid JSON in {self.path}: {exc}") from exc
