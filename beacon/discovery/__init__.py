"""Discoverer registry for beacon.

Usage::

    from beacon.discovery import new_discoverer
    discoverer = new_discoverer(request)   # picks the class by request.backend

Additional backends are plugged in with :func:`register_backend`.
"""

from __future__ import annotations

from beacon.convert import DiscoveryRequest
from beacon.errors import ConfigurationError

from .base import Discoverer
from .ec2 import EC2Discoverer
from .file import FileDiscoverer
from .http import HTTPDiscoverer
from .static import StaticDiscoverer

__all__ = [
    "Discoverer",
    "EC2Discoverer",
    "FileDiscoverer",
    "HTTPDiscoverer",
    "StaticDiscoverer",
    "get_backend",
    "lookup_backend",
    "new_discoverer",
    "register_backend",
]

_BACKENDS: dict[str, type[Discoverer]] = {
    "ec2": EC2Discoverer,
    "file": FileDiscoverer,
    "http": HTTPDiscoverer,
    "static": StaticDiscoverer,
}


def _normalize(name: str) -> str:
    return name.lower().replace("-", "_")


def register_backend(name: str, cls: type[Discoverer]) -> None:
    """Make *cls* available under *name* (replacing any previous entry)."""
    _BACKENDS[_normalize(name)] = cls


def lookup_backend(name: str) -> type[Discoverer] | None:
    return _BACKENDS.get(_normalize(name))


def get_backend(name: str) -> type[Discoverer]:
    cls = lookup_backend(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown discovery backend '{name}'. Choose from: {sorted(_BACKENDS)}"
        )
    return cls


def new_discoverer(request: DiscoveryRequest) -> Discoverer:
    """Default discoverer factory: look the backend up and build it."""
    return get_backend(request.backend).from_request(request)
