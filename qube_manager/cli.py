from __future__ import annotations

"""Command-line entry point.

  qube-manager [--dry-run] [--config-dir DIR] [--verbose]
  qube-manager [--config-dir DIR] send-message --type upgrade --version v1.2.3
  qube-manager send-message --type reboot --version 2.0.0 --genesis https://host/g.json --dry-run
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .config import DEFAULT_CONFIG_DIR, load_config
from .errors import InitializationError
from .history import HISTORY_FILENAME, HistoryLedger
from .keys import load_or_create_keypair
from .logging_cfg import configure_transport_logging, setup_logging
from .manager import QubeManager
from .messages import ActionKind, MessageRejected, compose_message
from .transport import SignedEvent, broadcast, open_relays

log = logging.getLogger("qube_manager")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qube-manager",
        description="Agree with the fleet on the next upgrade or reboot and perform it once.",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Select an action but do not publish or record it"
    )
    parser.add_argument("--config-dir", type=Path, default=DEFAULT_CONFIG_DIR)
    parser.add_argument(
        "--verbose", action="store_true", help="Debug logging, including relay transport logs"
    )

    sub = parser.add_subparsers(dest="command")
    send = sub.add_parser("send-message", help="Sign and publish an upgrade or reboot vote")
    send.add_argument(
        "--type", dest="msg_type", required=True, choices=[k.value for k in ActionKind]
    )
    send.add_argument("--version", required=True, help="Semantic version (e.g. v1.2.3)")
    send.add_argument("--genesis", help="Genesis URL (required for 'reboot')")
    send.add_argument("--extra", help="Extra data (optional)")
    send.add_argument(
        "--dry-run",
        dest="print_only",
        action="store_true",
        help="Print message instead of sending",
    )
    return parser


def run(args: argparse.Namespace, config_dir: Path) -> int:
    if args.dry_run:
        log.info("Running in dry-run mode")
    keypair = load_or_create_keypair(config_dir)
    settings = load_config(config_dir)
    ledger = HistoryLedger.load(config_dir / HISTORY_FILENAME)

    manager = QubeManager(settings, keypair, ledger, dry_run=args.dry_run)
    outcome = asyncio.run(manager.run())
    if outcome.durability_gap:
        log.warning("Action was performed but history could not be saved")
    return 0


def send_message(args: argparse.Namespace, config_dir: Path) -> int:
    try:
        msg = compose_message(args.msg_type, args.version, args.genesis, args.extra)
    except MessageRejected as exc:
        log.error("Invalid message: %s", exc)
        return 2
    content = json.dumps(msg, separators=(",", ":"))

    if args.print_only:
        log.info("[DRY RUN] Prepared message to publish:")
        print(content)
        return 0

    log.info("Loading keypair from config directory: %s", config_dir)
    keypair = load_or_create_keypair(config_dir)
    settings = load_config(config_dir)
    relays = open_relays(settings.relays)
    if not relays:
        log.warning("No relays configured; message will not be sent.")
        return 0

    event = SignedEvent.create(keypair, content)
    results = asyncio.run(broadcast(relays, event, timeout=settings.publish_timeout))
    delivered = sum(1 for err in results.values() if err is None)
    log.info(
        "Finished publishing message: %d of %d relay(s) accepted it", delivered, len(results)
    )
    return 0 if delivered else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config_dir: Path = args.config_dir.expanduser()

    try:
        config_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Failed to create config directory {config_dir}: {exc}", file=sys.stderr)
        return 1

    level = "DEBUG" if args.verbose else os.getenv("QUBE_LOG_LEVEL", "INFO")
    setup_logging(level=level, log_dir=config_dir)
    configure_transport_logging(args.verbose)
    log.info("Starting Qube Manager (config directory %s)", config_dir)

    try:
        if args.command == "send-message":
            return send_message(args, config_dir)
        return run(args, config_dir)
    except InitializationError as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
