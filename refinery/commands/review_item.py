#!/usr/bin/env python3
# refinery/commands/review_item.py
"""
Operator review actions.

Usage:
    # Approve or reject a validated item
    refinery-review approve <validated-id> --by alice
    refinery-review reject <validated-id> --reason "wrong gloss" --by alice

    # Confirm or reject a proposed topic mapping
    refinery-review confirm-mapping <mapping-id>
    refinery-review reject-mapping <mapping-id>

    # List the review queue
    refinery-review queue --limit 20
"""

import argparse
import asyncio
import logging
import sys
from uuid import UUID

from refinery.errors import NotFoundError
from refinery.services.database_service import database_service
from refinery.services.lifecycle_service import lifecycle_service
from refinery.services.mapping_service import MappingService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("refinery.commands.review")


async def review(args: argparse.Namespace) -> int:
    mapping_service = MappingService()
    try:
        async with database_service.get_session() as session:
            if args.action == "approve":
                approved = await lifecycle_service.approve_validated(session, args.item_id, args.by)
                print(f"approved={approved.id}")
            elif args.action == "reject":
                rejected = await lifecycle_service.record_rejection(
                    session, args.item_id, args.reason, args.by
                )
                print(f"rejected={rejected.id}")
            elif args.action == "confirm-mapping":
                mapping = await mapping_service.confirm_mapping(session, args.item_id)
                print(f"mapping={mapping.id} status={mapping.status}")
            elif args.action == "reject-mapping":
                mapping = await mapping_service.reject_mapping(session, args.item_id)
                print(f"mapping={mapping.id} status={mapping.status}")
            elif args.action == "queue":
                for entry in await lifecycle_service.get_review_queue(session, args.limit):
                    print(f"{entry.priority}\t{entry.data_type}\t{entry.item_id}\t{entry.queued_at}")
    except (NotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1
    finally:
        await database_service.close()
    return 0


def main():
    """Main entry point for the review command."""
    parser = argparse.ArgumentParser(description="Review validated items and topic mappings")
    subparsers = parser.add_subparsers(dest="action", required=True)

    approve = subparsers.add_parser("approve", help="Approve a validated item")
    approve.add_argument("item_id", type=UUID)
    approve.add_argument("--by", default=None, help="Reviewer name")

    reject = subparsers.add_parser("reject", help="Reject a validated item")
    reject.add_argument("item_id", type=UUID)
    reject.add_argument("--reason", required=True)
    reject.add_argument("--by", default=None, help="Reviewer name")

    confirm = subparsers.add_parser("confirm-mapping", help="Confirm a topic mapping")
    confirm.add_argument("item_id", type=UUID)

    reject_mapping = subparsers.add_parser("reject-mapping", help="Reject a topic mapping")
    reject_mapping.add_argument("item_id", type=UUID)

    queue = subparsers.add_parser("queue", help="List pending review entries")
    queue.add_argument("--limit", type=int, default=50)

    args = parser.parse_args()
    sys.exit(asyncio.run(review(args)))


if __name__ == "__main__":
    main()
