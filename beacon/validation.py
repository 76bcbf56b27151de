"""Configuration validation.

:func:`validate` returns a new, possibly adjusted configuration instead
of editing its argument: when the region is left empty for a backend
that needs one, the region resolved from instance metadata is filled in
on the returned copy only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from beacon.config import DiscoveryConfig
from beacon.credentials import CredentialResolver, resolve_credentials
from beacon.discovery import lookup_backend
from beacon.errors import ConfigurationError, ResolutionError
from beacon.imds import IMDSRegionProbe, RegionProbe

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0

REGION_REQUIRED = (
    "{backend} discovery requires a region; set region explicitly "
    "(automatic lookup from instance metadata failed: {reason})"
)

CREDENTIALS_FAILED = (
    "cannot load {backend} credentials: {reason}; "
    "check access_key, secret_key, profile and role_arn"
)


def check_structure(cfg: DiscoveryConfig) -> None:
    """Every check that needs no I/O.  Raises :class:`ConfigurationError`."""
    backend = lookup_backend(cfg.backend)
    if backend is None:
        raise ConfigurationError(f"unknown discovery backend {cfg.backend!r}")

    missing = [
        name
        for name in ("refresh_interval", "port", "http_client_config")
        if getattr(cfg, name) is None
    ]
    if missing:
        raise ConfigurationError(
            f"configuration has unset fields {', '.join(missing)}; apply defaults first"
        )

    if cfg.refresh_interval <= 0:
        raise ConfigurationError(
            f"refresh_interval must be positive, got {cfg.refresh_interval}"
        )
    if not 1 <= cfg.port <= 65535:
        raise ConfigurationError(f"port must be between 1 and 65535, got {cfg.port}")

    for f in cfg.filters:
        if not f.name:
            raise ConfigurationError("filter name cannot be empty")
        if len(f.values) == 0:
            raise ConfigurationError(f"filter {f.name!r} values cannot be empty")

    cfg.http_client_config.validate()

    if backend.requires_endpoint and not cfg.endpoint:
        raise ConfigurationError(f"the {cfg.backend} backend requires an endpoint")


async def validate(
    cfg: DiscoveryConfig,
    *,
    probe: RegionProbe | None = None,
    resolvers: Sequence[CredentialResolver] | None = None,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
) -> DiscoveryConfig:
    """Validate *cfg* and return the configuration to use.

    Defaults must already be applied.  Structural problems are reported
    before any network lookup is attempted.
    """
    check_structure(cfg)

    backend = lookup_backend(cfg.backend)
    if not backend.requires_region or cfg.region:
        return cfg

    try:
        credentials = await resolve_credentials(cfg, resolvers)
    except ResolutionError as exc:
        raise ConfigurationError(
            CREDENTIALS_FAILED.format(backend=cfg.backend, reason=exc)
        ) from exc
    if credentials is not None:
        logger.debug("Credentials for region lookup come from %s", credentials.source)

    if probe is None:
        probe = IMDSRegionProbe()
    try:
        region = await asyncio.wait_for(probe.get_region(), timeout=probe_timeout)
    except asyncio.TimeoutError as exc:
        raise ConfigurationError(
            REGION_REQUIRED.format(backend=cfg.backend, reason=f"timed out after {probe_timeout}s")
        ) from exc
    except Exception as exc:
        raise ConfigurationError(REGION_REQUIRED.format(backend=cfg.backend, reason=exc)) from exc

    if not region:
        raise ConfigurationError(REGION_REQUIRED.format(backend=cfg.backend, reason="empty region"))
    logger.info("No region configured; using %s from instance metadata", region)
    return cfg.replace(region=region)
