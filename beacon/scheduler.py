"""Refresh scheduler — polls the active discoverer at a fixed cadence.

State transitions::

    IDLE -> POLLING -> (PUBLISHED | FAILED) -> IDLE ... -> STOPPED

All shared state lives in one frozen :class:`DiscoveryState` that is
replaced wholesale on every change, so :meth:`RefreshScheduler.export`
and other readers always see one consistent snapshot.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from beacon.config import Filter, poll_timeout
from beacon.discovery.base import Discoverer
from beacon.errors import PollError, ShutdownError
from beacon.publisher import TargetSetPublisher
from beacon.targets import TargetGroup, count_targets

logger = logging.getLogger(__name__)


class SchedulerStatus(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    PUBLISHED = "published"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class DiscoveryState:
    """Everything the polling loop shares with the outside world."""

    discoverer: Discoverer
    refresh_interval: float
    filters: tuple[Filter, ...] = ()
    groups: tuple[TargetGroup, ...] = ()
    exported: tuple[TargetGroup, ...] = ()
    last_success: datetime | None = None
    last_error: BaseException | None = None
    status: SchedulerStatus = SchedulerStatus.IDLE


class RefreshScheduler:
    """Owns the polling loop and the :class:`DiscoveryState` it publishes."""

    def __init__(
        self,
        discoverer: Discoverer,
        refresh_interval: float,
        filters: Sequence[Filter] = (),
        publisher: TargetSetPublisher | None = None,
    ) -> None:
        self.publisher = publisher or TargetSetPublisher()
        self._state = DiscoveryState(
            discoverer=discoverer,
            refresh_interval=refresh_interval,
            filters=tuple(filters),
        )
        self._task: asyncio.Task | None = None
        self._stopped = False
        self._poll_lock = asyncio.Lock()
        self._in_flight: Discoverer | None = None
        self._retired: list[Discoverer] = []

    # ── Read path ──────────────────────────────────────────────────

    @property
    def state(self) -> DiscoveryState:
        return self._state

    @property
    def running(self) -> bool:
        """Whether the polling loop is currently active."""
        return self._task is not None and not self._task.done()

    @property
    def last_error(self) -> BaseException | None:
        return self._state.last_error

    @property
    def last_success(self) -> datetime | None:
        return self._state.last_success

    def export(self) -> tuple[TargetGroup, ...]:
        """The current filtered snapshot.  Stable between changes."""
        return self._state.exported

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background polling loop; the first poll runs immediately."""
        if self._stopped:
            raise ShutdownError("refresh scheduler has been stopped")
        if self._task is not None:
            logger.warning("Refresh scheduler is already running")
            return
        self._task = asyncio.create_task(self._loop(), name="beacon-refresh")
        logger.info(
            "Refresh scheduler started (interval=%.1fs)", self._state.refresh_interval
        )

    async def stop(self) -> None:
        """Cancel the polling loop and close the active discoverer.

        A poll started through :meth:`refresh` by another caller keeps its
        discoverer open until it returns.
        """
        if self._stopped and self._task is None:
            return
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set(status=SchedulerStatus.STOPPED)

        self._retired.append(self._state.discoverer)
        await self._close_retired()
        logger.info("Refresh scheduler stopped")

    # ── Polling ────────────────────────────────────────────────────

    async def refresh(self) -> SchedulerStatus:
        """Run one poll cycle against the active discoverer.

        Poll failures are recorded, never raised; the previous snapshot
        stays published.
        """
        if self._stopped:
            raise ShutdownError("refresh scheduler has been stopped")

        async with self._poll_lock:
            discoverer = self._state.discoverer
            timeout = poll_timeout(self._state.refresh_interval)
            self._set(status=SchedulerStatus.POLLING)
            self._in_flight = discoverer
            error: PollError | None = None
            groups: list[TargetGroup] = []
            try:
                groups = _checked(await asyncio.wait_for(discoverer.poll(), timeout))
            except asyncio.TimeoutError as exc:
                error = PollError(f"poll timed out after {timeout:.1f}s")
                error.__cause__ = exc
            except PollError as exc:
                error = exc
            except Exception as exc:
                error = PollError(f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc
            finally:
                self._in_flight = None

            if self._stopped:
                # stop() ran while this poll was in flight; its result is dropped.
                await self._close_retired()
                return SchedulerStatus.STOPPED
            if error is not None:
                self._fail(error)
            else:
                self._publish(groups)
            await self._close_retired()
            return self._state.status

    def _publish(self, groups: list[TargetGroup]) -> None:
        state = self._state
        exported = self.publisher.render(groups, state.filters)
        changed = exported is not state.exported
        self._state = dataclasses.replace(
            state,
            groups=tuple(groups),
            exported=exported,
            last_success=datetime.now(timezone.utc),
            last_error=None,
            status=SchedulerStatus.PUBLISHED,
        )
        logger.debug(
            "Published %d group(s), %d target(s)", len(exported), count_targets(exported)
        )
        if changed:
            self.publisher.notify(exported)

    def _fail(self, error: PollError) -> None:
        self._set(last_error=error, status=SchedulerStatus.FAILED)
        logger.warning("Poll failed, keeping previous targets: %s", error)

    async def _loop(self) -> None:
        """Poll, then sleep for the interval in effect when the sleep begins."""
        while True:
            try:
                await self.refresh()
            except ShutdownError:
                return
            except Exception:
                logger.exception("Refresh cycle failed")
            self._set(status=SchedulerStatus.IDLE)
            await asyncio.sleep(self._state.refresh_interval)

    # ── Reconfiguration ────────────────────────────────────────────

    async def swap(
        self,
        discoverer: Discoverer,
        refresh_interval: float,
        filters: Sequence[Filter] = (),
    ) -> None:
        """Atomically replace the discoverer, interval and filters.

        A poll already in flight finishes against the old discoverer and
        its result is still published; the old discoverer is closed once
        it is no longer in use.  The new interval applies from the next
        scheduled tick.
        """
        if self._stopped:
            raise ShutdownError("refresh scheduler has been stopped")

        state = self._state
        filters = tuple(filters)
        exported = self.publisher.render(state.groups, filters)
        changed = exported is not state.exported
        self._state = dataclasses.replace(
            state,
            discoverer=discoverer,
            refresh_interval=refresh_interval,
            filters=filters,
            exported=exported,
        )
        if state.discoverer is not discoverer:
            self._retired.append(state.discoverer)
        if changed:
            self.publisher.notify(exported)
        await self._close_retired()

    async def _close_retired(self) -> None:
        for discoverer in list(self._retired):
            if discoverer is self._in_flight:
                continue
            self._retired.remove(discoverer)
            try:
                await discoverer.aclose()
            except Exception:
                logger.exception("Error closing discoverer %r", discoverer)

    def _set(self, **changes: Any) -> None:
        self._state = dataclasses.replace(self._state, **changes)


def _checked(groups: Any) -> list[TargetGroup]:
    """Reject anything but a complete list of :class:`TargetGroup`."""
    if not isinstance(groups, (list, tuple)):
        raise PollError(f"discoverer returned {type(groups).__name__}, expected a list")
    for group in groups:
        if not isinstance(group, TargetGroup):
            raise PollError(
                f"discoverer returned {type(group).__name__} inside the group list"
            )
    return list(groups)
