"""Discovery component — configuration in, continuously refreshed targets out.

Usage::

    component = DiscoveryComponent(DiscoveryConfig(region="us-east-1"))
    await component.start()
    groups = component.export()
    await component.update(new_config)
    await component.stop()

:meth:`DiscoveryComponent.update` builds everything for the new
configuration before touching the running scheduler; if any step fails
the previous configuration stays fully in effect.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from beacon.config import DiscoveryConfig, Filter, apply_defaults
from beacon.convert import DiscoveryRequest, convert
from beacon.credentials import CredentialResolver
from beacon.discovery import Discoverer, new_discoverer
from beacon.errors import BeaconError, ConfigurationError, ShutdownError
from beacon.imds import RegionProbe
from beacon.publisher import Subscriber, TargetSetPublisher
from beacon.scheduler import DiscoveryState, RefreshScheduler, SchedulerStatus
from beacon.targets import TargetGroup
from beacon.validation import validate

logger = logging.getLogger(__name__)

DiscovererFactory = Callable[[DiscoveryRequest], Discoverer]


class DiscoveryComponent:
    """Validate, convert, poll, publish and reconfigure one discovery source."""

    def __init__(
        self,
        config: DiscoveryConfig,
        *,
        probe: RegionProbe | None = None,
        resolvers: Sequence[CredentialResolver] | None = None,
        factory: DiscovererFactory | None = None,
    ) -> None:
        self._initial = config
        self._probe = probe
        self._resolvers = resolvers
        self._factory = factory or new_discoverer
        self._publisher = TargetSetPublisher()
        self._config: DiscoveryConfig | None = None
        self._request: DiscoveryRequest | None = None
        self._scheduler: RefreshScheduler | None = None
        self._update_lock = asyncio.Lock()

    # ── Properties ─────────────────────────────────────────────────

    @property
    def config(self) -> DiscoveryConfig | None:
        """The active, validated configuration (``None`` before start)."""
        return self._config

    @property
    def request(self) -> DiscoveryRequest | None:
        return self._request

    @property
    def state(self) -> DiscoveryState | None:
        return self._scheduler.state if self._scheduler else None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def last_error(self) -> BaseException | None:
        return self._scheduler.last_error if self._scheduler else None

    # ── Build pipeline ─────────────────────────────────────────────

    async def build(
        self, config: DiscoveryConfig
    ) -> tuple[DiscoveryConfig, DiscoveryRequest, Discoverer]:
        """Defaults, validation, conversion and discoverer construction.

        Touches no live state.  Raises :class:`ConfigurationError`.
        """
        cfg = apply_defaults(config)
        cfg = await validate(cfg, probe=self._probe, resolvers=self._resolvers)
        request = convert(cfg)
        try:
            discoverer = self._factory(request)
        except BeaconError:
            raise
        except Exception as exc:
            raise ConfigurationError(
                f"cannot create {cfg.backend} discoverer: {exc}"
            ) from exc
        return cfg, request, discoverer

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self, *, poll: bool = True) -> None:
        """Build the initial configuration and, with *poll*, start the loop."""
        async with self._update_lock:
            if self._scheduler is None:
                cfg, request, discoverer = await self.build(self._initial)
                self._config, self._request = cfg, request
                self._scheduler = RefreshScheduler(
                    discoverer,
                    cfg.refresh_interval,
                    filters=_residual_filters(cfg, discoverer),
                    publisher=self._publisher,
                )
                logger.info(
                    "Discovery component configured (backend=%s, interval=%.1fs)",
                    cfg.backend,
                    cfg.refresh_interval,
                )
            if poll:
                await self._scheduler.start()

    async def stop(self) -> None:
        """Stop polling; returns once the loop has exited."""
        if self._scheduler is not None:
            await self._scheduler.stop()

    async def update(self, new_config: DiscoveryConfig) -> None:
        """Switch to *new_config* or raise, leaving the old one active."""
        async with self._update_lock:
            scheduler = self._require_scheduler()
            cfg, request, discoverer = await self.build(new_config)
            try:
                await scheduler.swap(
                    discoverer,
                    cfg.refresh_interval,
                    filters=_residual_filters(cfg, discoverer),
                )
            except ShutdownError:
                await discoverer.aclose()
                raise
            self._config, self._request = cfg, request
            logger.info(
                "Discovery component reconfigured (backend=%s, interval=%.1fs)",
                cfg.backend,
                cfg.refresh_interval,
            )

    async def refresh(self) -> SchedulerStatus:
        """Run one poll cycle immediately."""
        return await self._require_scheduler().refresh()

    # ── Export ─────────────────────────────────────────────────────

    def export(self) -> tuple[TargetGroup, ...]:
        """Current target groups; the same object until something changes."""
        if self._scheduler is None:
            return ()
        return self._scheduler.export()

    def subscribe(self, callback: Subscriber) -> None:
        self._publisher.subscribe(callback)

    def _require_scheduler(self) -> RefreshScheduler:
        if self._scheduler is None:
            raise ConfigurationError("discovery component has not been started")
        return self._scheduler


def _residual_filters(cfg: DiscoveryConfig, discoverer: Discoverer) -> tuple[Filter, ...]:
    """Filters the backend does not apply itself and the publisher must."""
    if discoverer.supports_filter_pushdown:
        return ()
    return cfg.filters
