#!/usr/bin/env python3
"""
AZ Failover Drill - Main Entry Point

Runs one operation against one cluster/service pair:
- failover: drop an AZ's subnets, evict its tasks, wait for convergence
- restore:  put the saved subnets back and wait for convergence
- drill:    failover, hold, restore
- serve:    start the REST API
"""

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .api.diagnostic_logger import configure_logging
from .api.models import create_session_factory
from .api.snapshot_store import SnapshotStore
from .cloud.aws import build_collaborators
from .config import Settings
from .errors import FailoverError
from .reconciler.reconciler import DrillResult, DrillStatus, FailoverController

EXIT_CODES = {
    DrillStatus.CONVERGED: 0,
    DrillStatus.FAILED: 1,
    DrillStatus.TIMED_OUT: 2,
    DrillStatus.CANCELLED: 130,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="azfailover",
        description="Simulate an availability zone failure for a container service",
    )
    sub = parser.add_subparsers(dest="mode", required=True)

    for mode in ("failover", "restore", "drill"):
        cmd = sub.add_parser(mode)
        cmd.add_argument("--cluster", required=True)
        cmd.add_argument("--service", required=True)
        cmd.add_argument("--region", default=None)
        if mode != "restore":
            cmd.add_argument("--az", required=True, help="availability zone to fail")
        if mode == "drill":
            cmd.add_argument("--restore-delay", type=float, default=None)
        cmd.add_argument("--timeout", type=float, default=None, help="convergence deadline, seconds")

    serve = sub.add_parser("serve")
    serve.add_argument("--port", type=int, default=None)
    return parser


def open_store(settings: Settings) -> SnapshotStore:
    return SnapshotStore(create_session_factory(settings.database_url))


def resolve_region(args, settings: Settings, store: SnapshotStore) -> str:
    """--region wins; a restore otherwise goes back to the region its failover ran in."""
    if args.region:
        return args.region
    if args.mode == "restore":
        snapshot = store.get(args.cluster, args.service)
        if snapshot is not None and snapshot.region:
            return snapshot.region
    return settings.region


def build_controller(settings: Settings, region: str, store: SnapshotStore) -> FailoverController:
    compute, network, notifier = build_collaborators(region, settings.sns_topic_arn)
    return FailoverController(
        compute,
        network,
        store,
        notifier=notifier,
        poll_settings=settings.poll,
        resolve_workers=settings.resolve_workers,
    )


def print_placement_report(result: DrillResult):
    if not result.placements:
        print("No running tasks detected.")
        return
    print("Current task placement by AZ:")
    for task, az in sorted(result.placements.items()):
        print(f"  - {task} -> {az}")


def print_result(result: DrillResult):
    print("")
    print("=" * 60)
    print(f"  {result.operation.title()}: {result.cluster}/{result.service}")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    if result.plan is not None:
        print(f"Excluded AZ: {result.plan.excluded_az}")
        print(f"Target subnets: {sorted(result.plan.target_subnets)}")
        print(f"Tasks evicted: {result.evicted}")
    if result.convergence is not None:
        print(f"Poll ticks: {result.convergence.ticks} ({result.convergence.elapsed_seconds:.0f}s)")
        if result.convergence.verdict is not None and not result.success:
            print(f"Last observation: {result.convergence.verdict.describe()}")
    if result.success:
        print_placement_report(result)


def start_rest_api(settings: Settings, port: Optional[int] = None):
    """Start the FastAPI REST API server."""
    import uvicorn

    port = port or settings.rest_port
    print(f"Starting REST API on port {port}...")
    uvicorn.run("azfailover.api.rest_api_server:app", host="0.0.0.0", port=port, log_level="info")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(logging.INFO, settings.log_file)

    if args.mode == "serve":
        start_rest_api(settings, args.port)
        return 0

    if args.timeout is not None:
        settings.poll.timeout_seconds = args.timeout
    store = open_store(settings)
    region = resolve_region(args, settings, store)

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

    controller = build_controller(settings, region, store)
    try:
        if args.mode == "failover":
            results = [controller.failover(args.cluster, args.service, args.az, region, cancel_event)]
        elif args.mode == "restore":
            results = [controller.restore(args.cluster, args.service, region, cancel_event)]
        else:
            delay = args.restore_delay
            if delay is None:
                delay = settings.restore_delay_seconds
            results = controller.drill(
                args.cluster, args.service, args.az, region, delay, cancel_event
            )
    except FailoverError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CODES[DrillStatus.FAILED]

    for result in results:
        print_result(result)

    last = results[-1]
    if last.success and last.operation == "failover" and args.mode == "failover":
        print("Verify service health, then rerun with 'restore' to bring the AZ back.")
    if args.mode == "drill" and last.success and last.operation == "failover":
        # hold was cancelled before restore
        return EXIT_CODES[DrillStatus.CANCELLED]
    return EXIT_CODES[last.status]


if __name__ == "__main__":
    sys.exit(main())
