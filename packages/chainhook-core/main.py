#!/usr/bin/env python3
"""Entry point for replaying chain events through the chainhook core.

Reads a JSON array of events, runs them through the reorg-aware ingestion
pipeline and reports metrics and the recovery actions an indexer must take.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from chainhook_core.config import ChainhookConfig, load_predicates
from chainhook_core.event_handler_registry import EventHandlerBuilder, event_handler_registry
from chainhook_core.ingestor import ChainhookIngestor
from chainhook_core.models import ChainEvent, event_from_dict


def load_events(path: str) -> list[ChainEvent]:
    """Load events from a JSON array file.

    Raises:
        ValueError: If the file is malformed or holds an unknown event
    """
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValueError(f"Could not read events file {path}: {e}") from e

    if not isinstance(raw, list):
        raise ValueError(f"Events file {path} must contain a JSON array")

    return [event_from_dict(entry) for entry in raw]


def log_event(event: ChainEvent, context: object = None) -> None:
    logger.info(f"Handled {event.kind} event at height {event.block_height}: {event.event_id}")


async def main() -> None:
    """Main entry point for the chainhook replay tool.

    Raises:
        SystemExit: On configuration errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Chainhook Core - Replay chain events through the reorg-aware pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  CHAINHOOK_NETWORK               - Network (default: testnet)
  REORG_MAX_ROLLBACK_DEPTH        - Maximum recoverable reorg depth (default: 100)
  REORG_DEEP_REORG_BLOCKS         - Deep reorg alert threshold (default: 10)
  REORG_LARGE_IMPACT_TRANSACTIONS - Large impact alert threshold (default: 100)
  REORG_FREQUENT_REORG_PER_HOUR   - Frequent reorg alert threshold per hour (default: 5)
  CHAINHOOK_WEBHOOK_URL           - Webhook receiving matched events (optional)
  CHAINHOOK_WEBHOOK_SECRET        - Secret used to sign webhook payloads (optional)
  WEBHOOK_TIMEOUT                 - Webhook timeout in seconds (default: 10)
  PREDICATES_FILE                 - JSON predicate definitions (optional)
  LOG_LEVEL                       - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "events",
        help="JSON file containing an array of events"
    )
    parser.add_argument(
        "--predicates",
        default=None,
        help="JSON file with predicate definitions (overrides PREDICATES_FILE)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Chainhook Core Replay Starting ===")

    try:
        config: ChainhookConfig = ChainhookConfig.from_env()
        config.log_config()

        predicates_file = args.predicates or config.predicates_file
        predicates = load_predicates(predicates_file) if predicates_file else []
        events = load_events(args.events)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables and input files")
        sys.exit(1)

    EventHandlerBuilder(event_handler_registry).on_any_event(log_event)
    ingestor = ChainhookIngestor(config, predicates=predicates)

    logger.info(f"Replaying {len(events)} events...")
    results = await ingestor.ingest_batch(events)

    for event, result in zip(events, results):
        if not result.processed:
            logger.info(f"Skipped {event.kind} event {event.event_id}: {result.reason}")

    ingestor.log_metrics()

    recovery = ingestor.get_recovery_actions()
    if recovery.verify_data_integrity:
        logger.warning("Reorgs observed; recovery actions required:")
        print(json.dumps(recovery.to_dict(), indent=2))
    else:
        logger.info("No reorgs observed; no recovery required")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)
