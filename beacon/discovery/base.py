"""Abstract discoverer interface.

Any discovery backend (cloud inventory, static list, file, HTTP endpoint)
implements this interface.  The scheduler guarantees at most one
:meth:`Discoverer.poll` in flight per instance, so implementations need
not be reentrant.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING

from beacon.config import DEFAULT_PORT

if TYPE_CHECKING:
    from beacon.convert import DiscoveryRequest
    from beacon.targets import TargetGroup


class Discoverer(abc.ABC):
    """Enumerates the current targets of one backend."""

    #: Whether filters are applied by the backend itself.
    supports_filter_pushdown: bool = False
    requires_region: bool = False
    requires_endpoint: bool = False
    default_port: int = DEFAULT_PORT

    @classmethod
    @abc.abstractmethod
    def from_request(cls, request: DiscoveryRequest) -> Discoverer:
        """Build a discoverer from a converted request.

        Raises :class:`~beacon.errors.ConfigurationError` when the request
        cannot be served by this backend.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def poll(self) -> list[TargetGroup]:
        """Return the complete current list of target groups.

        Must either return every group or raise; never a partial list.
        Cancellation arrives as :class:`asyncio.CancelledError`.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release backend resources.  Called once the discoverer is retired."""
