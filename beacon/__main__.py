"""beacon entry point.

Usage::

    python -m beacon [--config PATH] [--backend NAME] [--endpoint URL]
                     [--region REGION] [--refresh-interval DURATION]
                     [--once | --serve] [--debug]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from beacon.component import DiscoveryComponent
from beacon.config import DiscoveryConfig, parse_duration
from beacon.errors import ConfigurationError
from beacon.scheduler import SchedulerStatus
from beacon.targets import TargetGroup

logger = logging.getLogger(__name__)


def _print_targets(groups: tuple[TargetGroup, ...]) -> None:
    print(json.dumps([g.to_dict() for g in groups], indent=2), flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m beacon",
        description="Continuously refreshed target discovery",
    )
    parser.add_argument(
        "--config", "-c",
        default=os.environ.get("BEACON_CONFIG"),
        help="Path to a JSON discovery config (default: BEACON_CONFIG env var)",
    )
    parser.add_argument("--backend", default=None, help="Discovery backend (overrides config)")
    parser.add_argument("--endpoint", default=None, help="Backend endpoint (overrides config)")
    parser.add_argument("--region", default=None, help="Region (overrides config)")
    parser.add_argument(
        "--refresh-interval",
        default=None,
        help="Refresh interval such as 30s or 5m (overrides config)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Poll once, print targets and exit")
    mode.add_argument("--serve", action="store_true", help="Serve targets over HTTP")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def load_config(args: argparse.Namespace) -> DiscoveryConfig:
    """Config file (if any) with command-line overrides applied."""
    if args.config:
        config = DiscoveryConfig.load(args.config)
        logger.info("Loaded config from %s", args.config)
    else:
        config = DiscoveryConfig()
        logger.warning("No config given — using defaults")

    overrides = {}
    if args.backend:
        overrides["backend"] = args.backend
    if args.endpoint:
        overrides["endpoint"] = args.endpoint
    if args.region:
        overrides["region"] = args.region
    if args.refresh_interval:
        overrides["refresh_interval"] = parse_duration(args.refresh_interval)
    return config.replace(**overrides) if overrides else config


async def run_once(component: DiscoveryComponent) -> int:
    await component.start(poll=False)
    try:
        status = await component.refresh()
        if status is SchedulerStatus.FAILED:
            print(f"error: {component.last_error}", file=sys.stderr)
            return 1
        _print_targets(component.export())
        return 0
    finally:
        await component.stop()


async def run(component: DiscoveryComponent, serve: bool = False) -> None:
    """Run until SIGINT/SIGTERM, then stop the component cleanly."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d — shutting down", sig)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    if not serve:
        component.subscribe(_print_targets)
    await component.start()

    waiters = [asyncio.create_task(stop.wait())]
    if serve:
        from beacon.server import serve as serve_http

        # uvicorn handles the signals itself while serving and returns on exit
        waiters.append(asyncio.create_task(serve_http(component)))

    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        await component.stop()


def main() -> None:
    args = build_parser().parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        config = load_config(args)
        component = DiscoveryComponent(config)
        if args.once:
            sys.exit(asyncio.run(run_once(component)))
        asyncio.run(run(component, serve=args.serve))
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
