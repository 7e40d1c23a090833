#!/usr/bin/env python3
"""
fleet-dev - Single-machine variant, one local node and no coordination.

Usage:
    fleet-dev default-spec -o dev.yaml
    fleet-dev apply --spec dev.yaml
    fleet-dev delete
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path

from core import spec as specmod
from core.errors import FleetError
from fleet.cli import setup_logging
from fleet.devmachine import DevMachine, default_dev_spec

logger = logging.getLogger("fleet.cli.devmachine")

DEFAULT_ROOT = os.environ.get("FLEET_DEV_ROOT", str(Path.home() / ".fleet-dev"))


def cmd_default_spec(args) -> int:
    spec = default_dev_spec(fleet_id=args.fleet_id, version=args.version, network_id=args.network_id)
    data = specmod.to_yaml(spec)
    if args.output:
        Path(args.output).write_bytes(data)
        logger.info(f"Wrote default dev specification to {args.output}")
    else:
        sys.stdout.write(data.decode())
    return 0


def cmd_apply(args) -> int:
    spec = specmod.parse(Path(args.spec).read_bytes())
    state = DevMachine(Path(args.root)).apply(spec)
    print(json.dumps(asdict(state), indent=2, sort_keys=True))
    return 0


def cmd_delete(args) -> int:
    DevMachine(Path(args.root)).delete(keep_data=args.keep_data)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet-dev", description="Single-machine validator node")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--root", default=DEFAULT_ROOT, help="State directory")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    default = subparsers.add_parser("default-spec", help="Write a default dev specification")
    default.add_argument("--fleet-id", default="dev")
    default.add_argument("--version", default="v1.0.0")
    default.add_argument("--network-id", type=int, default=1337)
    default.add_argument("-o", "--output", help="Output file (default: stdout)")
    default.set_defaults(func=cmd_default_spec)

    apply = subparsers.add_parser("apply", help="Start or update the local node")
    apply.add_argument("--spec", required=True, help="Specification file")
    apply.set_defaults(func=cmd_apply)

    delete = subparsers.add_parser("delete", help="Stop the node and remove its state")
    delete.add_argument("--keep-data", action="store_true", help="Keep keys, binaries and data")
    delete.set_defaults(func=cmd_delete)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 1

    try:
        return func(args)
    except (FleetError, OSError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
