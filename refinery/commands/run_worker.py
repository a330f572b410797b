#!/usr/bin/env python3
# refinery/commands/run_worker.py
"""
Run the refinement worker.

Usage:
    # Create tables, then run until SIGINT/SIGTERM
    refinery-worker --init-db

    # Run a single tick and exit
    refinery-worker --once

Environment Variables:
    - DATABASE_URL: SQLAlchemy async URL (default: sqlite+aiosqlite:///./data/refinery.db)
    - LOOP_INTERVAL_MS: Baseline loop interval (default: 5000)
    - LOG_LEVEL: Root log level (default: INFO)
    - SEMANTIC_MAPPER_CLASS: Import path of the semantic mapper (optional)
    - CONTENT_TRANSFORMER_CLASS: Import path of the content transformer (optional)
    - QUALITY_GATE_CLASSES: JSON list of quality gate import paths (optional)
"""

import argparse
import asyncio
import logging
import sys

from refinery.config import settings
from refinery.errors import CollaboratorLoadError
from refinery.services.checkpoint_service import checkpoint_service
from refinery.services.database_service import database_service
from refinery.worker import build_worker

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("refinery.commands.worker")


async def run(once: bool, init_db: bool) -> int:
    if init_db:
        await database_service.init_db()

    health = await database_service.health_check()
    if health["status"] != "healthy":
        logger.error(f"Database unavailable: {health.get('error')}")
        await database_service.close()
        return 1

    try:
        worker = build_worker()
    except CollaboratorLoadError as e:
        logger.error(str(e))
        await database_service.close()
        return 1

    if not once:
        await worker.run()
        return 0

    try:
        await worker.startup()
        did_work = await worker.run_once()
        async with database_service.get_session() as session:
            healthy = await checkpoint_service.is_healthy(session)
        logger.info(f"Tick complete (work done: {did_work}, healthy: {healthy})")
    finally:
        await database_service.close()
    return 0


def main():
    """Main entry point for the worker command."""
    parser = argparse.ArgumentParser(
        description="Run the document refinement worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the loop
  refinery-worker

  # Create tables first
  refinery-worker --init-db

  # One tick, useful from cron or for debugging
  refinery-worker --once -v
        """,
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--init-db", action="store_true", help="Create database tables before starting")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        sys.exit(asyncio.run(run(once=args.once, init_db=args.init_db)))
    except asyncio.TimeoutError:
        logger.error("Forced exit after shutdown timeout")
        sys.exit(1)


if __name__ == "__main__":
    main()
