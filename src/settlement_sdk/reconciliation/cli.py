#!/usr/bin/env python3
"""Command-line interface for fee reconciliation.

Corrects stored ``net_application_fee`` / ``platform_earnings`` values on
bookings using the ledger's balance transactions.

Usage:
    settlement-reconcile reconcile --limit 50
    settlement-reconcile reconcile --booking-id 0b6f... --booking-id 9c2e... --dry-run
    settlement-reconcile reconcile --format detailed_text --output report.txt
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, List

from ..database import (
    Base,
    create_async_engine,
    get_database_url,
    make_session_factory,
)
from ..ledger import LedgerClientBase
from .models import ReconciliationRequest, ReconciliationStatus
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_reconciliation_async(
    limit: Optional[int] = None,
    booking_ids: Optional[List[str]] = None,
    dry_run: bool = False,
    provider: str = "stripe",
    output_file: Optional[str] = None,
    output_format: str = "json",
    include_details: bool = True,
    database_url: Optional[str] = None,
    ledger_client: Optional[LedgerClientBase] = None,
) -> int:
    """Run reconciliation asynchronously.

    Returns:
        Exit code: 0 when every booking succeeded or was skipped, 1 when some
        bookings failed, 2 when the job itself failed.
    """
    engine = create_async_engine(database_url=database_url or get_database_url())

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = make_session_factory(engine)

    try:
        async with session_factory() as session:
            service = ReconciliationService(session, ledger_client=ledger_client)

            request = ReconciliationRequest(
                limit=limit,
                booking_ids=booking_ids or None,
                dry_run=dry_run,
                provider=provider,
                actor="cli",
            )

            report = await service.run_reconciliation(request)
            if report.status == ReconciliationStatus.COMPLETED and not dry_run:
                await session.commit()
            else:
                await session.rollback()

            output = service.generate_report(
                report=report,
                format=output_format,
                include_details=include_details,
            )

            if output_file:
                with open(output_file, 'w') as f:
                    f.write(output)
                logger.info(f"Report written to {output_file}")
            else:
                print(output)

            if report.status != ReconciliationStatus.COMPLETED:
                logger.error(f"Reconciliation failed: {report.error_message}")
                return 2
            if report.total_failed > 0:
                logger.warning(
                    f"Reconciliation completed with {report.total_failed} failed bookings"
                )
                return 1
            return 0

    finally:
        await engine.dispose()


def run_reconciliation(**kwargs) -> int:
    """Run reconciliation (sync wrapper around :func:`run_reconciliation_async`)."""
    return asyncio.run(run_reconciliation_async(**kwargs))


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="settlement-reconcile",
        description="Correct stored booking fee fields against ledger settlements.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Run a reconciliation job",
    )
    reconcile_parser.add_argument(
        "--limit", "-l",
        type=int,
        help="Maximum bookings to process (default: RECONCILE_BATCH_LIMIT or 50)",
    )
    reconcile_parser.add_argument(
        "--booking-id", "-b",
        dest="booking_ids",
        action="append",
        default=[],
        help="Only reconcile this booking (repeatable)",
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be updated without making changes",
    )
    reconcile_parser.add_argument(
        "--provider", "-p",
        default="stripe",
        choices=["stripe", "simulator"],
        help="Ledger provider (default: stripe)",
    )
    reconcile_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    reconcile_parser.add_argument(
        "--format", "-f",
        choices=["json", "csv", "text", "detailed_text"],
        default="json",
        help="Output format (default: json)",
    )
    reconcile_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Only include summary statistics, not per-booking outcomes",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "reconcile":
        if parsed_args.limit is not None and parsed_args.limit < 1:
            logger.error("--limit must be a positive integer")
            return 1

        return run_reconciliation(
            limit=parsed_args.limit,
            booking_ids=parsed_args.booking_ids,
            dry_run=parsed_args.dry_run,
            provider=parsed_args.provider,
            output_file=parsed_args.output,
            output_format=parsed_args.format,
            include_details=not parsed_args.summary_only,
        )

    return 0


if __name__ == "__main__":
    sys.exit(main())
