#!/usr/bin/env python3
"""
fleetctl - Control-plane tool for a validator fleet.

Commands:
    default-spec              Write a default Specification
    apply                     Validate, store and converge a Specification
    delete                    Destroy every machine of the fleet
    read-spec                 Print the current (or a historical) Specification
    health                    Aggregate status records into a health summary
    check-balances            Flag validator addresses below the minimum
    events list               List the event log
    events update-artifacts   Start a rolling update to a new binary version

Most commands locate the fleet through --spec (its id and store.url), or
through --store and --fleet.

Usage:
    fleetctl default-spec --fleet-id testnet-a -o fleet.yaml
    fleetctl apply --spec fleet.yaml
    fleetctl events update-artifacts --spec fleet.yaml --version v1.11.0 --binary ./node
    fleetctl health --spec fleet.yaml
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Tuple

from core import spec as specmod
from core.errors import FleetError
from core.spec import Specification
from core.store import open_store
from fleet.cli import setup_logging
from fleet.controller import FleetController
from fleet.provisioning import LocalProvisioner
from fleet.registry import FleetRegistry

logger = logging.getLogger("fleet.cli.ops")

DEFAULT_PROVISIONER_ROOT = os.environ.get("FLEET_PROVISIONER_ROOT", ".fleet/instances")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ATTENTION = 2      # unhealthy fleet or flagged balances


def _load_spec_file(path: str) -> Specification:
    return specmod.parse(Path(path).read_bytes())


def _locate(args) -> Tuple[Optional[Specification], str, str]:
    """(spec from file or None, store url, fleet id) from the command's flags."""
    spec = _load_spec_file(args.spec) if getattr(args, "spec", None) else None
    store_url = args.store or (spec.store.url if spec else None)
    fleet_id = args.fleet or (spec.id if spec else None)
    if not store_url or not fleet_id:
        raise SystemExit("error: pass --spec, or both --store and --fleet")
    return spec, store_url, fleet_id


def _controller(args) -> Tuple[Optional[Specification], FleetController]:
    spec, store_url, fleet_id = _locate(args)
    registry = FleetRegistry(open_store(store_url), fleet_id)
    return spec, FleetController(registry, LocalProvisioner(Path(args.provisioner_root)))


def _print_json(data):
    print(json.dumps(data, indent=2, sort_keys=True))


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_default_spec(args) -> int:
    spec = specmod.default_spec(
        fleet_id=args.fleet_id,
        anchor_nodes=args.anchors,
        non_anchor_nodes=args.non_anchors,
        version=args.version,
        store_url=args.store_url,
        consensus_profile=args.profile,
        network_id=args.network_id,
    )
    specmod.validate(spec)
    data = specmod.to_yaml(spec)
    if args.output:
        Path(args.output).write_bytes(data)
        logger.info(f"Wrote default specification to {args.output}")
    else:
        sys.stdout.write(data.decode())
    return EXIT_OK


def cmd_apply(args) -> int:
    spec, controller = _controller(args)
    if spec is None:
        raise SystemExit("error: apply needs --spec")
    result = controller.apply(spec)
    _print_json(result.to_dict())
    return EXIT_OK


def cmd_delete(args) -> int:
    _, controller = _controller(args)
    actions = controller.delete(delete_store_objects=args.delete_store_objects)
    _print_json({"deleted": [a.describe() for a in actions]})
    return EXIT_OK


def cmd_read_spec(args) -> int:
    _, controller = _controller(args)
    spec = controller.read_spec(args.version)
    sys.stdout.write(specmod.to_yaml(spec).decode())
    return EXIT_OK


def cmd_health(args) -> int:
    _, controller = _controller(args)
    summary = controller.report_health()
    _print_json(summary.to_dict())
    return EXIT_OK if summary.healthy else EXIT_ATTENTION


def cmd_check_balances(args) -> int:
    _, controller = _controller(args)
    report = controller.check_balances(
        addresses=args.address,
        minimum=args.minimum,
        rpc_endpoint=args.rpc,
        record=args.record,
    )
    _print_json(report.to_dict())
    return EXIT_ATTENTION if report.flagged else EXIT_OK


def cmd_events_list(args) -> int:
    _, controller = _controller(args)
    _print_json([e.to_dict() for e in controller.list_events(since=args.since)])
    return EXIT_OK


def cmd_events_update(args) -> int:
    _, controller = _controller(args)
    event = controller.emit_update_event(
        version=args.version,
        targets=args.targets,
        excluded=args.exclude or (),
        binary_path=Path(args.binary) if args.binary else None,
    )
    _print_json(event.to_dict())
    return EXIT_OK


# =============================================================================
# PARSER
# =============================================================================

def _add_location(parser):
    parser.add_argument("--spec", help="Specification file (provides fleet id and store URL)")
    parser.add_argument("--store", help="Store URL (file://, memory://, s3://)")
    parser.add_argument("--fleet", help="Fleet id")
    parser.add_argument("--provisioner-root", default=DEFAULT_PROVISIONER_ROOT,
                        help="Local provisioner state directory")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetctl",
        description="Validator fleet control plane",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s default-spec --fleet-id testnet-a -o fleet.yaml
  %(prog)s apply --spec fleet.yaml
  %(prog)s health --spec fleet.yaml
  %(prog)s events update-artifacts --spec fleet.yaml --version v1.11.0 --binary ./node
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # default-spec
    default = subparsers.add_parser("default-spec", help="Write a default specification")
    default.add_argument("--fleet-id", default="fleet-dev")
    default.add_argument("--anchors", type=int, default=1)
    default.add_argument("--non-anchors", type=int, default=2)
    default.add_argument("--version", default="v1.0.0", help="Node binary version")
    default.add_argument("--store-url", default="file:///var/lib/fleet/store")
    default.add_argument("--profile", default="local", choices=sorted(specmod.CONSENSUS_PROFILES))
    default.add_argument("--network-id", type=int, default=1337)
    default.add_argument("-o", "--output", help="Output file (default: stdout)")
    default.set_defaults(func=cmd_default_spec)

    # apply
    apply = subparsers.add_parser("apply", help="Create or update the fleet")
    _add_location(apply)
    apply.set_defaults(func=cmd_apply)

    # delete
    delete = subparsers.add_parser("delete", help="Tear down the fleet")
    _add_location(delete)
    delete.add_argument("--delete-store-objects", action="store_true",
                        help="Also delete specifications, records, events and snapshots")
    delete.set_defaults(func=cmd_delete)

    # read-spec
    read = subparsers.add_parser("read-spec", help="Print the stored specification")
    _add_location(read)
    read.add_argument("--version", type=int, help="Historical specification version")
    read.set_defaults(func=cmd_read_spec)

    # health
    health = subparsers.add_parser("health", help="Fleet health summary")
    _add_location(health)
    health.set_defaults(func=cmd_health)

    # check-balances
    balances = subparsers.add_parser("check-balances", help="Check validator address balances")
    _add_location(balances)
    balances.add_argument("--address", action="append", help="Address to check (repeatable)")
    balances.add_argument("--minimum", type=int, help="Minimum balance in the smallest unit")
    balances.add_argument("--rpc", help="RPC endpoint (default: balance_check.rpc_endpoint)")
    balances.add_argument("--record", action="store_true", help="Append the result to the event log")
    balances.set_defaults(func=cmd_check_balances)

    # events
    events = subparsers.add_parser("events", help="Event log")
    event_commands = events.add_subparsers(dest="events_command")

    events_list = event_commands.add_parser("list", help="List events")
    _add_location(events_list)
    events_list.add_argument("--since", type=int, default=1, help="First sequence number")
    events_list.set_defaults(func=cmd_events_list)

    update = event_commands.add_parser("update-artifacts", help="Start a rolling update")
    _add_location(update)
    update.add_argument("--version", required=True, help="Target binary version")
    update.add_argument("--targets", type=int, nargs="+", help="Ordinals to update (default: all)")
    update.add_argument("--exclude", type=int, nargs="+", help="Ordinals to leave out")
    update.add_argument("--binary", help="Binary to upload for this version")
    update.set_defaults(func=cmd_events_update)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return EXIT_ERROR

    try:
        return func(args)
    except (FleetError, OSError) as e:
        logger.error(str(e))
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
