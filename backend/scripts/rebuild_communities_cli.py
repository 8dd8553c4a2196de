#!/usr/bin/env python3
"""
CLI tool to rebuild communities or push one item through the pipeline.

Usage:
    python scripts/rebuild_communities_cli.py rebuild [--output <file>]
    python scripts/rebuild_communities_cli.py run <item_id>

Example:
    python scripts/rebuild_communities_cli.py rebuild --output ./rebuild_report.json
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from milkmobs.config import settings
from milkmobs.db.database import async_session_maker, close_db, init_db
from milkmobs.pipeline.errors import ConflictError, InfraError, NotFoundError
from milkmobs.services.mob_service import build_mob_service


logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)


async def rebuild(output: Path = None) -> dict:
    """
    Run one full-corpus rebuild and print its report.

    Args:
        output: Optional file to write the JSON report to
    """
    await init_db()
    try:
        service = await build_mob_service(settings, async_session_maker)
        report = await service.rebuild_communities()
    finally:
        await close_db()

    data = report.to_dict()
    logger.info(
        f"Algorithm: {data['algorithm']}, corpus: {data['corpus_size']}, "
        f"clusters: {data['cluster_count']}"
    )
    for community_id, size in sorted(data["clusters"].items(), key=lambda kv: (-kv[1], kv[0])):
        logger.info(f"  {community_id}: {size} member(s)")
    if data["communities_reset"]:
        logger.info(f"Reset to zero: {', '.join(data['communities_reset'])}")

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Report written to {output}")
    return data


async def run_item(item_id: str) -> dict:
    """Run the pipeline for one item and print the outcome."""
    await init_db()
    try:
        service = await build_mob_service(settings, async_session_maker)
        outcome = await service.run_pipeline(item_id)
    finally:
        await close_db()

    data = outcome.to_dict()
    logger.info(
        f"Execution {data['execution_id']}: {data['execution_status']}, "
        f"item {data['item_status']}, community {data['community_id']}"
    )
    if data["error"]:
        logger.warning(f"Error: {data['error']}")
    return data


def main():
    parser = argparse.ArgumentParser(
        description="Rebuild MilkMobs communities or run the pipeline for one item",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Re-cluster every validated item
    python scripts/rebuild_communities_cli.py rebuild

    # Save the rebuild report
    python scripts/rebuild_communities_cli.py rebuild --output ./report.json

    # Push one uploaded item through the pipeline
    python scripts/rebuild_communities_cli.py run video-123
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    rebuild_parser = subparsers.add_parser("rebuild", help="Re-cluster the validated corpus")
    rebuild_parser.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Write the JSON report to this file"
    )

    run_parser = subparsers.add_parser("run", help="Run the pipeline for one item")
    run_parser.add_argument(
        "item_id",
        help="Content item id"
    )

    args = parser.parse_args()

    try:
        if args.command == "rebuild":
            asyncio.run(rebuild(output=args.output))
        else:
            data = asyncio.run(run_item(args.item_id))
            if data["execution_status"] != "succeeded":
                sys.exit(2)
    except (NotFoundError, ConflictError) as e:
        logger.error(str(e))
        sys.exit(1)
    except InfraError as e:
        logger.error(f"Infrastructure unavailable: {e}")
        sys.exit(3)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
