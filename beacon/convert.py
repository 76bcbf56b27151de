"""Map a validated configuration onto the request a discoverer consumes."""

from __future__ import annotations

from dataclasses import dataclass, field

from beacon.config import DEFAULT_HTTP_CLIENT_CONFIG, DiscoveryConfig, HTTPClientConfig


@dataclass(frozen=True)
class FilterSpec:
    name: str
    values: tuple[str, ...]


@dataclass(frozen=True)
class DiscoveryRequest:
    backend: str
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = field(default="", repr=False)
    profile: str = ""
    role_arn: str = ""
    refresh_interval: float = 0.0
    port: int = 0
    filters: tuple[FilterSpec, ...] = ()
    http_client_config: HTTPClientConfig = DEFAULT_HTTP_CLIENT_CONFIG


def convert(cfg: DiscoveryConfig) -> DiscoveryRequest:
    """Pure mapping; *cfg* must already have passed validation."""
    return DiscoveryRequest(
        backend=cfg.backend,
        endpoint=cfg.endpoint,
        region=cfg.region,
        access_key=cfg.access_key,
        secret_key=cfg.secret_key,
        profile=cfg.profile,
        role_arn=cfg.role_arn,
        refresh_interval=float(cfg.refresh_interval or 0.0),
        port=int(cfg.port or 0),
        filters=tuple(FilterSpec(name=f.name, values=tuple(f.values)) for f in cfg.filters),
        http_client_config=cfg.http_client_config or DEFAULT_HTTP_CLIENT_CONFIG,
    )
