#!/usr/bin/env python3
# refinery/commands/seed_curriculum.py
"""
Seed curriculum levels and topics from a YAML file.

Semantic mapping needs a curriculum level for the document's language and
target level (or the language's A1 level) with at least one topic.

Usage:
    refinery-seed curriculum.yaml
    refinery-seed curriculum.yaml --init-db

File format:
    levels:
      - language: ES
        cefr_level: A1
        name: Spanish A1
        topics:
          - name: Greetings
            content_type: vocabulary
          - name: Present tense of ser
            content_type: grammar
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from refinery.models.curriculum import CurriculumDefinition
from refinery.services.database_service import database_service
from refinery.services.mapping_service import MappingService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("refinery.commands.seed")


def load_curriculum(path: Path) -> CurriculumDefinition:
    """
    Parse and validate a curriculum file.

    Raises:
        ValueError: If the file is not valid YAML or does not match the format
    """
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    try:
        return CurriculumDefinition.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid curriculum in {path}: {e}") from e


async def seed(path: Path, init_db: bool) -> int:
    try:
        curriculum = load_curriculum(path)
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return 1

    try:
        if init_db:
            await database_service.init_db()
        async with database_service.get_session() as session:
            levels, topics = await MappingService().seed_curriculum(session, curriculum)
    finally:
        await database_service.close()

    print(f"levels_created={levels} topics_created={topics}")
    return 0


def main():
    """Main entry point for the seed command."""
    parser = argparse.ArgumentParser(description="Seed curriculum levels and topics")
    parser.add_argument("path", type=Path, help="Curriculum YAML file")
    parser.add_argument("--init-db", action="store_true", help="Create database tables first")

    args = parser.parse_args()
    sys.exit(asyncio.run(seed(args.path, args.init_db)))


if __name__ == "__main__":
    main()
