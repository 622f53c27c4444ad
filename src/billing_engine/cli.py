"""Billing Command Line Interface.

Provides operational tools for:
- Running a billing period (scheduled or manual)
- Dry runs that show the would-be invoices
- Creating the schema in a fresh database

Usage:
    python -m billing_engine.cli run [--vendor-id X] [--period YYYY-MM] [--force]
    python -m billing_engine.cli run --dry-run --force
    python -m billing_engine.cli init-db
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable
from uuid import UUID

from billing_engine.calculators.types import BillingPeriod
from billing_engine.config import get_settings
from billing_engine.database import dispose_db, get_session, init_db
from billing_engine.models import Base
from billing_engine.schemas import BatchResult, BillingRequest
from billing_engine.services.billing_service import BillingService

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def parse_period(s: str) -> str:
    """Validate a YYYY-MM period label."""
    try:
        return BillingPeriod.parse(s).label
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


class BillingCli:
    """Billing Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m billing_engine.cli",
            description="Periodic capped billing",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # run command
        run = subparsers.add_parser(
            "run",
            help="Bill vendors for a period",
        )
        run.add_argument(
            "--vendor-id",
            type=parse_uuid,
            help="Only bill this vendor (default: all eligible vendors)",
        )
        run.add_argument(
            "--period",
            type=parse_period,
            help="Billing period YYYY-MM (default: previous month)",
        )
        run.add_argument(
            "--force",
            action="store_true",
            help="Run even if today is not the first day of the month",
        )
        mode = run.add_mutually_exclusive_group()
        mode.add_argument(
            "--dry-run",
            action="store_true",
            help="Compute invoices without persisting anything",
        )
        mode.add_argument(
            "--preview",
            action="store_true",
            help="Persist runs and invoices but skip dispatch",
        )

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create billing tables",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run CLI with arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "run": self._cmd_run,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    @staticmethod
    def build_request(args: argparse.Namespace) -> BillingRequest:
        return BillingRequest(
            vendor_id=args.vendor_id,
            period=args.period,
            force=args.force,
            dry_run=args.dry_run,
            preview=args.preview,
        )

    def _cmd_run(self, args: argparse.Namespace) -> int:
        """Run a billing batch and print the result as JSON."""
        request = self.build_request(args)
        result = asyncio.run(self._run_batch(request))
        print(result.model_dump_json(indent=2))
        return 1 if result.failed_count else 0

    async def _run_batch(self, request: BillingRequest) -> BatchResult:
        try:
            async with get_session() as session:
                return await BillingService(session).run(request)
        finally:
            await dispose_db()

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create all tables."""
        asyncio.run(self._init_db())
        print("Billing tables created.")
        return 0

    async def _init_db(self) -> None:
        engine, _ = init_db()
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        finally:
            await dispose_db()


def configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> int:
    """CLI entry point."""
    configure_logging()
    cli = BillingCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
