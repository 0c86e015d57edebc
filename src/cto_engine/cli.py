"""CTO engine command line interface.

Provides operational tools for:
- Running the API server
- Schema creation
- Ledger invariant checks
- Balance queries

Usage:
    cto-engine serve
    cto-engine init-db
    cto-engine check-invariants
    cto-engine balance --employee-id X
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable
from uuid import UUID

from cto_engine.config import get_settings
from cto_engine.database import create_schema, dispose_db, init_db
from cto_engine.errors import CtoError
from cto_engine.services import CreditService
from cto_engine.services.invariants import find_violations


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger from LOG_LEVEL."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class CtoCli:
    """CTO engine command line interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="cto-engine",
            description="CTO ledger operational tools",
        )
        parser.add_argument("--log-level", help="Override LOG_LEVEL")
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
        subparsers.add_parser("init-db", help="Create database tables")
        subparsers.add_parser(
            "check-invariants",
            help="Verify sub-ledger, application and balance invariants",
        )

        balance = subparsers.add_parser(
            "balance",
            help="Show an employee's CTO balance",
        )
        balance.add_argument(
            "--employee-id",
            type=parse_uuid,
            required=True,
            help="Employee to query",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        configure_logging(parsed.log_level)

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "serve": self._cmd_serve,
            "init-db": self._cmd_init_db,
            "check-invariants": self._cmd_check_invariants,
            "balance": self._cmd_balance,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_serve(self, args: argparse.Namespace) -> int:
        """Run the API server."""
        from cto_engine.__main__ import main as serve

        serve()
        return 0

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create all tables."""

        async def _run() -> None:
            engine, _ = init_db()
            try:
                await create_schema(engine)
            finally:
                await dispose_db()

        asyncio.run(_run())
        print("Schema created.")
        return 0

    def _cmd_check_invariants(self, args: argparse.Namespace) -> int:
        """Scan the ledger for invariant violations."""

        async def _run():
            _, factory = init_db()
            try:
                async with factory() as session:
                    return await find_violations(session)
            finally:
                await dispose_db()

        violations = asyncio.run(_run())
        if not violations:
            print("Ledger invariants: PASSED")
            return 0

        print("Ledger invariants: FAILED")
        print(f"\n{len(violations)} issue(s) found:")
        for violation in violations:
            print(f"  - {violation}")
        return 1

    def _cmd_balance(self, args: argparse.Namespace) -> int:
        """Print aggregate and per-batch hours for one employee."""

        async def _run():
            _, factory = init_db()
            try:
                service = CreditService(factory)
                summary = await service.get_balance_summary(args.employee_id)
                entries = await service.list_employee_credits(args.employee_id)
                return summary, entries
            finally:
                await dispose_db()

        try:
            summary, entries = asyncio.run(_run())
        except CtoError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            return 1

        print(f"CTO balance for employee: {args.employee_id}")
        print(f"\n  Balance:   {summary.balance:>10}")
        print(f"  Credited:  {summary.credited:>10}")
        print(f"  Used:      {summary.used:>10}")
        print(f"  Reserved:  {summary.reserved:>10}")
        print(f"  Remaining: {summary.remaining:>10}")

        if entries:
            print("\n  Batches:")
            for entry in entries:
                print(
                    f"    - {entry.credit.memo_no:<12} {entry.status:<10} "
                    f"credited {entry.credited_hours}, used {entry.used_hours}, "
                    f"reserved {entry.reserved_hours}, remaining {entry.remaining_hours}"
                )
        return 0


def main() -> int:
    """CLI entry point."""
    cli = CtoCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
