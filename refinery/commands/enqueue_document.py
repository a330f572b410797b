#!/usr/bin/env python3
# refinery/commands/enqueue_document.py
"""
Register a document for refinement.

Creates the Document row (status ``pending``) and its pending pipeline.
The worker picks the pipeline up on its next tick.

Usage:
    refinery-enqueue textbook.txt --language ES --level A2

    # Path relative to UPLOADS_DIR
    refinery-enqueue spanish/unit1.txt --language ES
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from refinery.config import settings
from refinery.services.database_service import database_service
from refinery.services.pipeline_orchestrator import pipeline_orchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("refinery.commands.enqueue")


async def enqueue(path: str, language: str, level: str) -> int:
    resolved = Path(path)
    if not resolved.is_absolute():
        resolved = settings.uploads_path / resolved
    if not resolved.exists():
        logger.error(f"File not found: {resolved}")
        return 1

    try:
        async with database_service.get_session() as session:
            document, pipeline = await pipeline_orchestrator.register_document(
                session,
                filename=resolved.name,
                storage_path=str(resolved),
                language=language,
                target_level=level,
            )
            print(f"document={document.id} pipeline={pipeline.id}")
    finally:
        await database_service.close()
    return 0


def main():
    """Main entry point for the enqueue command."""
    parser = argparse.ArgumentParser(description="Register a document and its pipeline")
    parser.add_argument("path", help="Document path (absolute, or relative to UPLOADS_DIR)")
    parser.add_argument("--language", default=settings.default_language, help="Document language code")
    parser.add_argument("--level", default=None, help="Target CEFR level (e.g. A1, B2)")

    args = parser.parse_args()
    sys.exit(asyncio.run(enqueue(args.path, args.language, args.level)))


if __name__ == "__main__":
    main()
