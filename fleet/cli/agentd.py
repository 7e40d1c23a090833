#!/usr/bin/env python3
"""
fleet-agent - Node agent tool, run on each validator machine.

Commands:
    run                 Run the agent until SIGTERM / SIGINT
    backup upload       Snapshot the local data directory now
    backup download     Restore the slot's latest (or a given) snapshot

Settings come from a YAML file (--settings) with ${VAR} expansion; flags
override individual values.

Usage:
    fleet-agent run --settings /etc/fleet/agent.yaml
    fleet-agent run --settings /etc/fleet/agent.yaml --clear-halt
    fleet-agent backup upload --settings /etc/fleet/agent.yaml
    fleet-agent backup download --settings /etc/fleet/agent.yaml --dest /tmp/db
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from core.config import AgentSettings, load_agent_settings
from core.errors import FleetError
from core.spec import NetworkSpec
from core.store import open_store
from fleet.agent import FatalAgentError, NodeAgent
from fleet.cli import setup_logging
from fleet.managed_node import SubprocessNode
from fleet.registry import FleetRegistry
from fleet.types import NodeIdentity
from vault.snapshots import SnapshotManager

logger = logging.getLogger("fleet.cli.agentd")


def _settings(args) -> AgentSettings:
    settings = load_agent_settings(
        args.settings,
        store_url=args.store_url,
        identity_file=args.identity,
        data_dir=args.data_dir,
        work_dir=args.work_dir,
        node_binary=args.binary,
        http_port=args.http_port,
    )
    if not settings.store_url:
        raise SystemExit("error: no store URL (settings store_url or --store-url)")
    return settings


def _registry(settings: AgentSettings, identity: NodeIdentity) -> FleetRegistry:
    return FleetRegistry(open_store(settings.store_url), identity.fleet_id)


def _snapshot_manager(settings: AgentSettings, identity: NodeIdentity) -> SnapshotManager:
    registry = _registry(settings, identity)
    spec = registry.get_spec()
    return SnapshotManager(
        registry=registry,
        identity=identity,
        network_id=spec.network.network_id,
        data_dir=Path(settings.data_dir),
        staging_dir=settings.staging_dir,
        policy=spec.policy,
    )


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_run(args) -> int:
    settings = _settings(args)
    identity = NodeIdentity.load(Path(settings.identity_file))
    registry = _registry(settings, identity)

    spec = registry.get_spec_or_none()
    http_port = settings.http_port or (spec.network.http_port if spec else NetworkSpec().http_port)
    node = SubprocessNode(
        data_dir=Path(settings.data_dir),
        http_url=f"http://{settings.http_host}:{http_port}",
        log_path=Path(settings.work_dir) / "logs" / "node.log",
    )
    agent = NodeAgent(registry, identity, settings, node, clear_halt=args.clear_halt)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        agent.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        agent.run()
    except FatalAgentError as e:
        logger.error(f"Agent cannot run: {e}")
        return 1
    return 0


def cmd_backup_upload(args) -> int:
    settings = _settings(args)
    identity = NodeIdentity.load(Path(settings.identity_file))
    manager = _snapshot_manager(settings, identity)
    logger.warning("Manual snapshot: stop the node first for a consistent copy")
    record = manager.snapshot(reason=args.reason)
    print(json.dumps(record.to_dict(), indent=2, sort_keys=True))
    return 0


def cmd_backup_download(args) -> int:
    settings = _settings(args)
    identity = NodeIdentity.load(Path(settings.identity_file))
    manager = _snapshot_manager(settings, identity)
    dest = manager.restore(
        dest=Path(args.dest) if args.dest else None,
        slot=args.slot,
        snapshot_id=args.snapshot_id,
    )
    print(dest)
    return 0


# =============================================================================
# PARSER
# =============================================================================

def _add_settings(parser):
    parser.add_argument("--settings", help="Agent settings YAML file")
    parser.add_argument("--store-url", help="Override store URL")
    parser.add_argument("--identity", help="Override identity file")
    parser.add_argument("--data-dir", help="Override node data directory")
    parser.add_argument("--work-dir", help="Override agent work directory")
    parser.add_argument("--binary", help="Override local node binary")
    parser.add_argument("--http-port", type=int, help="Override node HTTP port")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleet-agent", description="Validator node agent")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run = subparsers.add_parser("run", help="Run the node agent")
    _add_settings(run)
    run.add_argument("--clear-halt", action="store_true",
                     help="Resume automatic updates halted by a failed update")
    run.set_defaults(func=cmd_run)

    backup = subparsers.add_parser("backup", help="Manual snapshot / restore")
    backup_commands = backup.add_subparsers(dest="backup_command")

    upload = backup_commands.add_parser("upload", help="Snapshot the data directory")
    _add_settings(upload)
    upload.add_argument("--reason", default="manual")
    upload.set_defaults(func=cmd_backup_upload)

    download = backup_commands.add_parser("download", help="Restore a snapshot")
    _add_settings(download)
    download.add_argument("--dest", help="Target directory (default: data dir)")
    download.add_argument("--slot", help="Slot to restore, e.g. anchor-0 (default: own slot)")
    download.add_argument("--snapshot-id", help="Specific snapshot (default: newest)")
    download.set_defaults(func=cmd_backup_download)

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
