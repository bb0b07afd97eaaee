"""
Administrative command line for convguard stores.

Usage:
    convguard --db chats.db health [--all] [--conversation ID]
    convguard --db chats.db repair ID
    convguard --db chats.db checkpoint ID [--name NAME]
    convguard --db chats.db checkpoints ID [--limit N]
    convguard --db chats.db restore ID NAME
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .branching import BranchManager
from .checkpoints import CheckpointManager
from .config import DEFAULT_CONFIG_PATH, GuardConfig
from .errors import ConvGuardError
from .health import ConversationHealthMonitor
from .locks import ConversationLocks
from .repair import SequenceRepairer
from .rich_output import GuardConsole
from .turn_store import SQLiteTurnStore
from .validator import IntegrityValidator

DEFAULT_DB_PATH = Path.home() / ".convguard" / "convguard.db"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convguard",
        description="Inspect and repair tool-calling conversations",
    )
    parser.add_argument("--db", type=Path, help="SQLite store path")
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH, help="JSON configuration file"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    health = subparsers.add_parser("health", help="Show health or run a sweep")
    health.add_argument("--conversation", help="Show metrics for one conversation")
    health.add_argument(
        "--all", action="store_true", help="Check every active conversation in the sweep"
    )

    repair = subparsers.add_parser("repair", help="Repair a conversation")
    repair.add_argument("conversation_id")

    create = subparsers.add_parser("checkpoint", help="Create a checkpoint")
    create.add_argument("conversation_id")
    create.add_argument("--name", help="Checkpoint name (defaults to a timestamp)")

    listing = subparsers.add_parser("checkpoints", help="List checkpoints")
    listing.add_argument("conversation_id")
    listing.add_argument("--limit", type=int, default=None)

    restore = subparsers.add_parser("restore", help="Restore a checkpoint")
    restore.add_argument("conversation_id")
    restore.add_argument("name")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = GuardConfig.load(args.config)
    db_path = args.db or (Path(config.store.path) if config.store.path else DEFAULT_DB_PATH)

    store = SQLiteTurnStore(db_path)
    locks = ConversationLocks()
    validator = IntegrityValidator(store, config=config.validation)
    repairer = SequenceRepairer(store, validator, locks)
    checkpoints = CheckpointManager(store, validator, locks, config.checkpoints)
    output = GuardConsole()

    try:
        if args.command == "health":
            monitor = ConversationHealthMonitor(
                store,
                validator,
                repairer,
                BranchManager(store, validator, locks),
                checkpoints,
                config.health,
            )
            if args.conversation:
                output.print_health_metrics(monitor.metrics(args.conversation))
                return 0
            summary = monitor.sweep(check_all=args.all)
            output.print_sweep_summary(summary)
            return 1 if summary.alert else 0

        if args.command == "repair":
            output.print_repair_report(repairer.repair(args.conversation_id))
        elif args.command == "checkpoint":
            checkpoint = checkpoints.create(args.conversation_id, args.name)
            output.print_checkpoints(args.conversation_id, [checkpoint.summary()])
        elif args.command == "checkpoints":
            output.print_checkpoints(
                args.conversation_id, checkpoints.list(args.conversation_id, args.limit)
            )
        elif args.command == "restore":
            checkpoints.restore(args.conversation_id, args.name)
            output.print_checkpoints(
                args.conversation_id, checkpoints.list(args.conversation_id, 1)
            )
        return 0
    except ConvGuardError as e:
        output.print_error_panel(type(e).__name__, e.message)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
