#!/usr/bin/env python3
# refinery/commands/retry_pipeline.py
"""
Retry the failed tasks of a pipeline.

Tasks that have failed fewer than MAX_TASK_RETRIES times go back to
``pending`` and the pipeline returns to ``processing``.

Usage:
    refinery-retry 3f2c6a1e-...-pipeline-id
"""

import argparse
import asyncio
import logging
import sys
from uuid import UUID

from refinery.errors import NotFoundError
from refinery.services.database_service import database_service
from refinery.services.pipeline_service import pipeline_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("refinery.commands.retry")


async def retry(pipeline_id: UUID) -> int:
    try:
        async with database_service.get_session() as session:
            reset = await pipeline_service.retry_failed_tasks(session, pipeline_id)
    except NotFoundError as e:
        logger.error(str(e))
        return 1
    finally:
        await database_service.close()

    print(f"reset={reset}")
    return 0


def main():
    """Main entry point for the retry command."""
    parser = argparse.ArgumentParser(description="Retry failed tasks of a pipeline")
    parser.add_argument("pipeline_id", type=UUID, help="Pipeline id")

    args = parser.parse_args()
    sys.exit(asyncio.run(retry(args.pipeline_id)))


if __name__ == "__main__":
    main()
