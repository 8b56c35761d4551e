"""
Command line entry point.

    replica-autoscaler [continuous]        loop forever at INTERVAL
    replica-autoscaler single              run one cycle and exit
    replica-autoscaler status              print stored scaling state
    replica-autoscaler set-override SERVICE REPLICAS
    replica-autoscaler clear-override SERVICE
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from replica_autoscaler.bootstrap import build_orchestrator, build_state_store, configure_logging
from replica_autoscaler.config import load_config
from replica_autoscaler.errors import ConfigError, StateStoreError
from replica_autoscaler.limits import ManualOverrides
from replica_autoscaler.models import OutcomeStatus

logger = logging.getLogger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="replica-autoscaler", description="Replica autoscaling orchestrator")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("continuous", help="Run continuous orchestration (default)")
    sub.add_parser("single", help="Run a single orchestration cycle")
    sub.add_parser("status", help="Print stored scaling state and manual overrides")

    set_override = sub.add_parser("set-override", help="Pin a service to a replica count")
    set_override.add_argument("service")
    set_override.add_argument("replicas", type=int)

    clear_override = sub.add_parser("clear-override", help="Remove a service's manual override")
    clear_override.add_argument("service")
    return parser


def install_signal_handlers(orchestrator) -> None:
    """SIGINT/SIGTERM stop new cycles; running ones finish and report."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.request_shutdown)


async def run_continuous(orchestrator) -> None:
    install_signal_handlers(orchestrator)
    await orchestrator.run_forever()


async def run_single_cycle(orchestrator):
    install_signal_handlers(orchestrator)
    return await orchestrator.run_once()


def run_single(orchestrator) -> int:
    events = asyncio.run(run_single_cycle(orchestrator))
    for event in events:
        print(json.dumps(event.to_dict()))
    # Partial scaling leaves capacity and routing out of step; make it visible to cron/CI.
    if any(e.outcome.status is OutcomeStatus.PARTIAL_FAILURE for e in events):
        return 2
    return 0


def show_status(config) -> int:
    store = build_state_store(config)
    overrides = ManualOverrides(config.manual_override_file).all() if config.manual_override_file else {}
    report = {}
    for service in config.services:
        try:
            state = store.load(service)
        except StateStoreError as e:
            logger.error(f"Failed to load state for {service}: {e}")
            state = None
        limits = config.limits[service]
        report[service] = {
            "state": state.to_dict() if state else None,
            "min_replicas": limits.min_replicas,
            "max_replicas": limits.max_replicas,
            "manual_override": overrides.get(service),
        }
    print(json.dumps(report, indent=2))
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    configure_logging(config.log_level)

    command = args.command or "continuous"
    if command in ("set-override", "clear-override"):
        if args.service not in config.services:
            print(f"Error: unknown service {args.service!r}", file=sys.stderr)
            return 1
        if not config.manual_override_file:
            print("Error: MANUAL_OVERRIDE_FILE is not set", file=sys.stderr)
            return 1
        overrides = ManualOverrides(config.manual_override_file)
        if command == "set-override":
            try:
                overrides.set(args.service, args.replicas, config.limits[args.service])
            except ValueError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
        else:
            overrides.clear(args.service)
        return 0

    if command == "status":
        return show_status(config)

    orchestrator = build_orchestrator(config)
    if command == "single":
        return run_single(orchestrator)

    asyncio.run(run_continuous(orchestrator))
    return 0


if __name__ == "__main__":
    sys.exit(main())
