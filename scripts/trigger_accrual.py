"""
Run one autogrowth accrual pass from the command line

Usage:
    python scripts/trigger_accrual.py
    python scripts/trigger_accrual.py --now 2026-10-01T00:05:00+00:00 --dry-run
    python scripts/trigger_accrual.py --seed-tiers
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from config.logging import setup_logging
from src.database import crud
from src.database.engine import dispose_engine, get_session_maker
from src.services.autogrowth.service import AutogrowthService
from src.utils.clock import ensure_not_future


def as_of_instant(value: str) -> datetime:
    """argparse type for --now: ISO-8601, not in the future"""
    try:
        return ensure_not_future(datetime.fromisoformat(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one autogrowth accrual pass")
    parser.add_argument(
        "--now",
        type=as_of_instant,
        default=None,
        help="Accrue up to this past ISO-8601 instant (naive = UTC). Default: current time",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute and report without writing",
    )
    parser.add_argument(
        "--seed-tiers",
        action="store_true",
        help="Insert the default tier catalog first (existing ids are kept)",
    )
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    session_maker = get_session_maker()

    try:
        if args.seed_tiers:
            async with session_maker() as session:
                inserted = await crud.seed_tiers(session)
            logger.info(f"Tier catalog seeded: {inserted} new tier(s)")

        service = AutogrowthService(session_maker)
        result = await service.trigger_accrual(
            now=args.now, triggered_by="cli", dry_run=args.dry_run
        )
    finally:
        await dispose_engine()

    if not result.get("success"):
        logger.error(f"Accrual pass failed: {result.get('error')}")
        for failure in result.get("failures", []):
            logger.error(f"  #{failure['position_id']} [{failure['code']}] {failure['error']}")
        return 1

    logger.info(
        f"Accrual pass done{' (dry run)' if args.dry_run else ''}: "
        f"{result['positions_updated']} updated, {result['positions_matured']} matured, "
        f"{result['positions_skipped']} skipped, ROI distributed {result['roi_distributed']}"
    )
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(main()))
