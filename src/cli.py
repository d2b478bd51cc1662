#!/usr/bin/env python3
"""
CLI for running the filesystem connector.

Usage:
    python -m src.cli run --roots /path/to/folder1 /path/to/folder2
    python -m src.cli run --roots /path/to/folder --work-dir ./data --batch-hint 50
    python -m src.cli clean --work-dir ./data
"""

import argparse
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load .env from project root
_env_file = Path(__file__).parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    load_dotenv()

from src.connector import ChangeBatch, Connector, ConnectorConfig, ConnectorError, ScanContext


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cli")

CHECKPOINT_FILE_NAME = "checkpoint"


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def load_checkpoint(path: Path) -> Optional[str]:
    """Read the persisted checkpoint token, or None if there is none."""
    try:
        token = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return token or None


def save_checkpoint(path: Path, token: str) -> None:
    """Atomically replace the persisted checkpoint token."""
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(token)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def print_batch(batch: ChangeBatch) -> None:
    for entry in batch:
        change = entry.change
        print(f"{entry.checkpoint}\t{change.change_type.value}\t{change.record.path}", flush=True)


def build_config(args) -> ConnectorConfig:
    overrides = {}
    if args.work_dir:
        overrides["work_dir"] = Path(args.work_dir).resolve()
    if getattr(args, "roots", None):
        overrides["roots"] = [Path(r).resolve() for r in args.roots]
    if getattr(args, "interval", None) is not None:
        overrides["scan_interval_seconds"] = args.interval
    if getattr(args, "no_fs_events", False):
        overrides["use_fs_events"] = False
    return ConnectorConfig.from_env(**overrides)


def cmd_run(args):
    """Traverse the roots, printing each batch and persisting the checkpoint."""
    config = build_config(args)

    for root in config.roots:
        if not root.exists():
            logger.error(f"Root path does not exist: {root}")
            sys.exit(1)
        if not root.is_dir():
            logger.error(f"Root path is not a directory: {root}")
            sys.exit(1)
    if not config.roots:
        logger.error("No roots given (use --roots or CONNECTOR_ROOTS)")
        sys.exit(1)

    config.work_dir.mkdir(parents=True, exist_ok=True)
    checkpoint_file = config.work_dir / CHECKPOINT_FILE_NAME
    checkpoint = load_checkpoint(checkpoint_file)

    shutdown = GracefulShutdown()
    connector = Connector(config)
    traversal = connector.get_traversal_manager()
    traversal.set_batch_hint(args.batch_hint)
    if args.max_document_size is not None:
        traversal.set_context(ScanContext(max_document_size=args.max_document_size))

    logger.info(f"Connector running with {len(config.roots)} root(s)")
    for root in config.roots:
        logger.info(f"  - {root}")
    logger.info(f"State directory: {config.work_dir}")
    logger.info("Press Ctrl+C to stop")

    try:
        if checkpoint is None:
            batch = traversal.start_traversal()
        else:
            logger.info(f"Resuming from checkpoint {checkpoint}")
            batch = traversal.resume_traversal(checkpoint)

        while not shutdown.should_exit:
            if batch.changes:
                logger.info(f"Delivering {len(batch)} change(s)")
                print_batch(batch)
            save_checkpoint(checkpoint_file, batch.checkpoint)
            if not batch.changes:
                # Sleep in short steps so a signal is noticed promptly.
                for _ in range(int(args.poll * 10)):
                    if shutdown.should_exit:
                        break
                    time.sleep(0.1)
            batch = traversal.resume_traversal(batch.checkpoint)
    except ConnectorError as e:
        logger.error(f"Connector failed: {e}")
        sys.exit(1)
    finally:
        connector.shutdown()

    logger.info("Connector stopped")


def cmd_clean(args):
    """Delete all snapshot, recovery and checkpoint state."""
    config = build_config(args)
    connector = Connector(config)
    connector.delete()
    checkpoint_file = config.work_dir / CHECKPOINT_FILE_NAME
    checkpoint_file.unlink(missing_ok=True)
    logger.info(f"Removed connector state under {config.work_dir}")


def main():
    parser = argparse.ArgumentParser(
        description="Filesystem change connector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Traverse roots and print changes")
    run_parser.add_argument("--roots", "-r", nargs="*", help="Root folders to monitor")
    run_parser.add_argument("--work-dir", "-w", help="Directory for connector state")
    run_parser.add_argument("--interval", type=float, help="Seconds between scans of a root")
    run_parser.add_argument("--batch-hint", type=int, default=100, help="Maximum changes per batch")
    run_parser.add_argument("--max-document-size", type=int, help="Skip files larger than this many bytes")
    run_parser.add_argument("--poll", type=float, default=2.0, help="Seconds to wait after an empty batch")
    run_parser.add_argument("--no-fs-events", action="store_true", help="Disable filesystem notifications")
    run_parser.set_defaults(func=cmd_run)

    clean_parser = subparsers.add_parser("clean", help="Delete all connector state")
    clean_parser.add_argument("--work-dir", "-w", help="Directory for connector state")
    clean_parser.set_defaults(func=cmd_clean)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
