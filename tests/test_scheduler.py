"""Tests for RefreshScheduler — poll cycle, loop, shutdown and swaps."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from beacon.config import DiscoveryConfig, Filter, apply_defaults
from beacon.convert import convert
from beacon.discovery import EC2Discoverer
from beacon.errors import PollError, ShutdownError
from beacon.scheduler import RefreshScheduler, SchedulerStatus, poll_timeout


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestPollCycle:
    async def test_initial_state(self, fake_discoverer):
        scheduler = RefreshScheduler(fake_discoverer(), refresh_interval=60.0)
        assert scheduler.running is False
        assert scheduler.export() == ()
        assert scheduler.last_success is None
        assert scheduler.last_error is None
        assert scheduler.state.status is SchedulerStatus.IDLE

    async def test_successful_poll_publishes(self, fake_discoverer, group):
        g1 = [group("a", "10.0.0.1:80")]
        scheduler = RefreshScheduler(fake_discoverer(g1), refresh_interval=60.0)
        status = await scheduler.refresh()
        assert status is SchedulerStatus.PUBLISHED
        assert scheduler.export() == tuple(g1)
        assert scheduler.last_success is not None

    async def test_failed_poll_keeps_previous_snapshot(self, fake_discoverer, group):
        g1 = [group("a", "10.0.0.1:80")]
        discoverer = fake_discoverer(g1, PollError("rate limited"))
        scheduler = RefreshScheduler(discoverer, refresh_interval=60.0)

        await scheduler.refresh()
        exported = scheduler.export()
        status = await scheduler.refresh()

        assert status is SchedulerStatus.FAILED
        assert scheduler.export() is exported
        assert scheduler.export() == tuple(g1)
        assert isinstance(scheduler.last_error, PollError)
        assert "rate limited" in str(scheduler.last_error)

    async def test_success_clears_last_error(self, fake_discoverer, group):
        discoverer = fake_discoverer(PollError("flaky"), [group("a", "x:1")])
        scheduler = RefreshScheduler(discoverer, refresh_interval=60.0)
        await scheduler.refresh()
        assert scheduler.last_error is not None
        await scheduler.refresh()
        assert scheduler.last_error is None

    async def test_unexpected_exception_wrapped(self, fake_discoverer):
        scheduler = RefreshScheduler(fake_discoverer(ValueError("bad token")), refresh_interval=60.0)
        assert await scheduler.refresh() is SchedulerStatus.FAILED
        assert isinstance(scheduler.last_error, PollError)
        assert isinstance(scheduler.last_error.__cause__, ValueError)

    async def test_malformed_result_rejected(self, fake_discoverer, group):
        scheduler = RefreshScheduler(
            fake_discoverer([group("a", "x:1")], ["not a group"]), refresh_interval=60.0
        )
        await scheduler.refresh()
        before = scheduler.export()
        assert await scheduler.refresh() is SchedulerStatus.FAILED
        assert scheduler.export() is before

    async def test_poll_bounded_by_timeout(self, fake_discoverer):
        discoverer = fake_discoverer()
        discoverer.block = asyncio.Event()
        scheduler = RefreshScheduler(discoverer, refresh_interval=0.1)

        start = time.monotonic()
        status = await scheduler.refresh()
        assert status is SchedulerStatus.FAILED
        assert "timed out" in str(scheduler.last_error)
        assert time.monotonic() - start < 0.5

    def test_timeout_strictly_less_than_interval(self):
        for interval in (0.1, 1.0, 60.0, 3600.0):
            assert 0 < poll_timeout(interval) < interval

    async def test_identical_polls_keep_export_identity(self, fake_discoverer, group):
        scheduler = RefreshScheduler(
            fake_discoverer([group("a", "x:1")], [group("a", "x:1")]), refresh_interval=60.0
        )
        await scheduler.refresh()
        first = scheduler.export()
        await scheduler.refresh()
        assert scheduler.export() is first

    async def test_latest_poll_replaces_snapshot(self, fake_discoverer, group):
        scheduler = RefreshScheduler(
            fake_discoverer([group("a", "x:1")], [group("b", "y:1")]), refresh_interval=60.0
        )
        await scheduler.refresh()
        await scheduler.refresh()
        assert [g.source for g in scheduler.export()] == ["b"]

    async def test_subscribers_notified_on_change_only(self, fake_discoverer, group):
        scheduler = RefreshScheduler(
            fake_discoverer([group("a", "x:1")], [group("a", "x:1")], [group("a", "y:1")]),
            refresh_interval=60.0,
        )
        seen = []
        scheduler.publisher.subscribe(seen.append)
        for _ in range(3):
            await scheduler.refresh()
        assert len(seen) == 2

    async def test_residual_filters_applied(self, fake_discoverer):
        from beacon.targets import Target, TargetGroup

        groups = [TargetGroup("a", (Target("x:1", {"env": "prod"}), Target("y:1", {"env": "dev"})))]
        scheduler = RefreshScheduler(
            fake_discoverer(groups),
            refresh_interval=60.0,
            filters=[Filter("env", ("prod",))],
        )
        await scheduler.refresh()
        assert [t.address for t in scheduler.export()[0].targets] == ["x:1"]
        assert len(scheduler.state.groups[0].targets) == 2


class TestLoop:
    async def test_start_polls_immediately_and_stops(self, fake_discoverer, group):
        discoverer = fake_discoverer([group("a", "x:1")])
        scheduler = RefreshScheduler(discoverer, refresh_interval=60.0)
        await scheduler.start()
        assert scheduler.running is True
        await _wait_for(lambda: discoverer.calls == 1)
        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler.state.status is SchedulerStatus.STOPPED
        assert discoverer.closed is True

    async def test_double_start_warns(self, fake_discoverer, caplog):
        scheduler = RefreshScheduler(fake_discoverer(), refresh_interval=60.0)
        await scheduler.start()
        await scheduler.start()
        assert "already running" in caplog.text
        await scheduler.stop()

    async def test_stop_is_idempotent(self, fake_discoverer):
        scheduler = RefreshScheduler(fake_discoverer(), refresh_interval=60.0)
        await scheduler.stop()
        await scheduler.stop()
        assert scheduler.running is False

    async def test_polls_at_interval(self, fake_discoverer):
        discoverer = fake_discoverer()
        scheduler = RefreshScheduler(discoverer, refresh_interval=0.05)
        await scheduler.start()
        await _wait_for(lambda: discoverer.calls >= 3)
        await scheduler.stop()

    async def test_failures_do_not_kill_loop(self, fake_discoverer):
        discoverer = fake_discoverer(PollError("down"))
        scheduler = RefreshScheduler(discoverer, refresh_interval=0.05)
        await scheduler.start()
        await _wait_for(lambda: discoverer.calls >= 3)
        assert scheduler.running is True
        await scheduler.stop()

    async def test_shutdown_cancels_blocked_poll(self, fake_discoverer):
        discoverer = fake_discoverer()
        discoverer.block = asyncio.Event()
        scheduler = RefreshScheduler(discoverer, refresh_interval=30.0)
        await scheduler.start()
        await _wait_for(lambda: discoverer.calls == 1)

        start = time.monotonic()
        await scheduler.stop()
        assert time.monotonic() - start < poll_timeout(30.0)
        assert time.monotonic() - start < 1.0
        assert scheduler.running is False
        assert scheduler.last_error is None
        assert scheduler.export() == ()

    async def test_timed_out_ec2_calls_never_overlap(self):
        lock = threading.Lock()
        counts = {"active": 0, "peak": 0}

        class SlowClient:
            closed = False

            def describe_availability_zones(self):
                with lock:
                    counts["active"] += 1
                    counts["peak"] = max(counts["peak"], counts["active"])
                time.sleep(0.5)
                with lock:
                    counts["active"] -= 1
                return {"AvailabilityZones": []}

            def get_paginator(self, name):
                return self

            def paginate(self, Filters):
                return iter([])

            def close(self):
                self.closed = True

        client = SlowClient()
        request = convert(apply_defaults(DiscoveryConfig(region="us-east-1", refresh_interval=0.1)))
        discoverer = EC2Discoverer(request, client_factory=lambda request: client)
        scheduler = RefreshScheduler(discoverer, refresh_interval=0.1)

        await scheduler.start()
        await asyncio.sleep(0.35)
        await scheduler.stop()

        assert counts["peak"] == 1
        assert counts["active"] == 0
        assert client.closed is True
        assert isinstance(scheduler.last_error, PollError)

    async def test_stop_waits_for_external_refresh_before_closing(self, fake_discoverer, group):
        discoverer = fake_discoverer([group("a", "x:1")])
        discoverer.block = asyncio.Event()
        scheduler = RefreshScheduler(discoverer, refresh_interval=60.0)

        pending = asyncio.create_task(scheduler.refresh())
        await _wait_for(lambda: discoverer.calls == 1)
        await scheduler.stop()
        assert discoverer.closed is False

        discoverer.block.set()
        assert await pending is SchedulerStatus.STOPPED
        assert discoverer.closed is True
        assert scheduler.export() == ()
        assert scheduler.state.status is SchedulerStatus.STOPPED

    async def test_refresh_after_stop_raises(self, fake_discoverer):
        scheduler = RefreshScheduler(fake_discoverer(), refresh_interval=60.0)
        await scheduler.stop()
        with pytest.raises(ShutdownError):
            await scheduler.refresh()
        with pytest.raises(ShutdownError):
            await scheduler.start()


class TestSwap:
    async def test_new_discoverer_used_on_next_poll(self, fake_discoverer, group):
        old = fake_discoverer([group("old", "x:1")])
        new = fake_discoverer([group("new", "y:1")])
        scheduler = RefreshScheduler(old, refresh_interval=60.0)
        await scheduler.refresh()

        await scheduler.swap(new, 60.0)
        assert old.closed is True
        assert [g.source for g in scheduler.export()] == ["old"]

        await scheduler.refresh()
        assert [g.source for g in scheduler.export()] == ["new"]
        assert old.calls == 1

    async def test_in_flight_poll_finishes_on_old_discoverer(self, fake_discoverer, group):
        old = fake_discoverer([group("old", "x:1")])
        old.block = asyncio.Event()
        new = fake_discoverer([group("new", "y:1")])
        scheduler = RefreshScheduler(old, refresh_interval=60.0)

        task = asyncio.create_task(scheduler.refresh())
        await _wait_for(lambda: old.calls == 1)
        await scheduler.swap(new, 10.0)
        assert old.closed is False

        old.block.set()
        assert await task is SchedulerStatus.PUBLISHED
        assert [g.source for g in scheduler.export()] == ["old"]
        assert old.closed is True
        assert scheduler.state.discoverer is new
        assert scheduler.state.refresh_interval == 10.0

    async def test_interval_change_applies_from_next_tick(self, fake_discoverer):
        discoverer = fake_discoverer()
        scheduler = RefreshScheduler(discoverer, refresh_interval=0.4)
        await scheduler.start()
        await _wait_for(lambda: discoverer.calls == 1)

        await scheduler.swap(discoverer, 0.05)
        await asyncio.sleep(0.2)
        assert discoverer.calls == 1

        await _wait_for(lambda: discoverer.calls >= 4, timeout=2.0)
        gaps = [b - a for a, b in zip(discoverer.call_times, discoverer.call_times[1:])]
        assert gaps[0] >= 0.35
        assert all(gap < 0.3 for gap in gaps[1:])
        await scheduler.stop()

    async def test_swap_refilters_current_snapshot(self, fake_discoverer):
        from beacon.targets import Target, TargetGroup

        groups = [TargetGroup("a", (Target("x:1", {"env": "prod"}), Target("y:1", {"env": "dev"})))]
        discoverer = fake_discoverer(groups)
        scheduler = RefreshScheduler(discoverer, refresh_interval=60.0)
        await scheduler.refresh()
        assert len(scheduler.export()[0].targets) == 2

        await scheduler.swap(discoverer, 60.0, filters=[Filter("env", ("dev",))])
        assert [t.address for t in scheduler.export()[0].targets] == ["y:1"]
        assert discoverer.closed is False

    async def test_swap_after_stop_raises(self, fake_discoverer):
        scheduler = RefreshScheduler(fake_discoverer(), refresh_interval=60.0)
        await scheduler.stop()
        with pytest.raises(ShutdownError):
            await scheduler.swap(fake_discoverer(), 10.0)


class TestConsistentReads:
    async def test_export_never_mixes_polls(self, fake_discoverer, group):
        poll_a = [group(f"a{i}", f"10.0.0.{i}:80") for i in range(20)]
        poll_b = [group(f"b{i}", f"10.0.1.{i}:80") for i in range(20)]
        results = [poll_a, poll_b] * 50
        scheduler = RefreshScheduler(fake_discoverer(*results), refresh_interval=60.0)
        await scheduler.refresh()

        done = False
        torn: list[tuple] = []

        def reader():
            while not done:
                snapshot = scheduler.export()
                prefixes = {g.source[0] for g in snapshot}
                if len(prefixes) > 1:
                    torn.append(snapshot)

        reader_task = asyncio.create_task(asyncio.to_thread(reader))
        for _ in range(99):
            await scheduler.refresh()
            await asyncio.sleep(0)
        done = True
        await reader_task
        assert torn == []
