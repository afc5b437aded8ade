"""Command-line entry point for the sweep and batch jobs.

Usage:
    nexa offers:expire
    nexa timeline:check-deadlines
    nexa milestones:check-deadlines
    nexa payments:process
    nexa withdrawals:process
    nexa withdrawals:verify [--id ID] [--status S] [--method M]
                            [--start-date YYYY-MM-DD] [--end-date YYYY-MM-DD] [--detailed]

Every command returns 0 on success and 1 when the run itself fails
(for example a query error). Per-record failures inside a batch are
reported in the summary and do not change the exit code.
"""

import argparse
import asyncio
import logging
import sys
from datetime import date

from nexa_platform.app.config import get_settings

logger = logging.getLogger(__name__)


def _report(job: str, summary) -> str:
    data = summary.model_dump()
    if job == "offers:expire":
        return f"Expired {data['expired']} offer(s)."
    if job in ("timeline:check-deadlines", "milestones:check-deadlines"):
        label = "suspensions" if job.startswith("timeline") else "penalties"
        return (
            f"Checked {data['processed']} milestone(s): {data['warnings_sent']} warning(s) sent, "
            f"{data['penalties_applied']} {label} applied."
        )
    noun = "payment(s)" if job.startswith("payments") else "withdrawal(s)"
    return f"Processed {data['processed']} {noun}, {data['failed']} failed."


async def _run_job(job: str, session_factory) -> None:
    from nexa_platform.services.background_jobs import run_job

    print(f"Running {job}...")
    async with session_factory() as db:
        summary = await run_job(job, db, get_settings())
    print(_report(job, summary))


async def _run_verify(args: argparse.Namespace, session_factory) -> None:
    from nexa_platform.services.withdrawal_verification import (
        VerificationFilters,
        render_report,
        verify_withdrawals,
    )

    filters = VerificationFilters(
        id=args.id,
        status=args.status,
        method=args.method,
        start_date=args.start_date,
        end_date=args.end_date,
    )
    print("Verifying withdrawals...")
    async with session_factory() as db:
        withdrawals, results, summary = await verify_withdrawals(db, filters, get_settings())
        # Rendering reads the eagerly loaded creators, keep the session open
        lines = render_report(withdrawals, results, summary, detailed=args.detailed)
    for line in lines:
        print(line)


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    from nexa_platform.services.background_jobs import JOBS

    parser = argparse.ArgumentParser(prog="nexa", description="Nexa platform jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    for job in JOBS:
        sub.add_parser(job, help=f"Run the {job} job")

    verify = sub.add_parser("withdrawals:verify", help="Audit withdrawals against bank accounts")
    verify.add_argument("--id", help="Verify a single withdrawal")
    verify.add_argument("--status", help="Filter by withdrawal status")
    verify.add_argument("--method", help="Filter by withdrawal method")
    verify.add_argument("--start-date", type=_iso_date, help="Created on or after (YYYY-MM-DD)")
    verify.add_argument("--end-date", type=_iso_date, help="Created on or before (YYYY-MM-DD)")
    verify.add_argument("--detailed", action="store_true", help="Show bank details side by side")
    return parser


async def _dispatch(args: argparse.Namespace, session_factory) -> None:
    if args.command == "withdrawals:verify":
        await _run_verify(args, session_factory)
    else:
        await _run_job(args.command, session_factory)


def main(argv: list[str] | None = None, session_factory=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(message)s")

    async def runner():
        factory = session_factory
        if factory is None:
            from nexa_platform.infra.database import async_session, init_db

            await init_db()
            factory = async_session
        await _dispatch(args, factory)

    try:
        asyncio.run(runner())
    except Exception:
        logger.exception("%s failed", args.command)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
