"""
GMB Export -- command-line entry point.

Usage
-----
    python -m gmb_export.main purchase --user 1 --amount 20
    python -m gmb_export.main export --user 1 -q "plumbers" -l "New York City"
    python -m gmb_export.main export --user 1 -q "cafes" -l "Chicago" --max-results 100
    python -m gmb_export.main balance --user 1
    python -m gmb_export.main jobs --user 1
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

from loguru import logger

import gmb_export.config as cfg
from gmb_export.billing.exports import ExportService
from gmb_export.core.error_handler import ErrorHandler
from gmb_export.core.errors import ExportError, InsufficientCredits
from gmb_export.models.billing import ExportTarget, JobStatus
from gmb_export.storage.database import Store
from gmb_export.utils.exporter import LocalArtifactSink


# -- Commands --------------------------------------------------------------

async def _run_export(service: ExportService, args: argparse.Namespace) -> int:
    target = ExportTarget(
        query=args.query,
        location=args.location,
        business_id=args.business_id,
        max_results=args.max_results,
    )

    logger.info("=" * 60)
    logger.info("EXPORT: '{}' for user {} (cost: {})", target.search_text, args.user, args.cost)
    logger.info("=" * 60)

    start = time.time()
    try:
        job_id = await service.request_export(args.user, target, args.cost)
    except InsufficientCredits as exc:
        logger.error("[{}] {}", exc.code, exc)
        return 2
    except ValueError as exc:
        logger.error("{}", exc)
        return 2

    async for event in service.events(job_id):
        if event.kind == "progress" and event.progress is not None:
            logger.debug(
                "  {:<14} found {:>4}  extracted {:>4}",
                event.progress.phase.value,
                event.progress.listings_found,
                event.progress.listings_extracted,
            )
    job = await service.wait(job_id)
    elapsed = time.time() - start

    logger.info("")
    logger.info("=" * 60)
    logger.info("EXPORT {} FINISHED  ({:.1f}s elapsed)", job.id, elapsed)
    logger.info("=" * 60)
    if job.status == JobStatus.COMPLETED:
        logger.info("  [OK]  {} record(s)  ->  {}", job.record_count, job.download_url)
        logger.info("  Balance: {} credit(s)", service.get_balance(args.user))
    else:
        logger.info("  [FAIL]  {} ({})", job.error_code, job.error_message)
    logger.info("=" * 60)
    return 0 if job.status == JobStatus.COMPLETED else 1


def _cmd_balance(service: ExportService, args: argparse.Namespace) -> int:
    logger.info("User {} balance: {} credit(s)", args.user, service.get_balance(args.user))
    return 0


def _cmd_purchase(service: ExportService, args: argparse.Namespace) -> int:
    try:
        service.purchase_credits(args.user, args.amount, args.description)
    except ValueError as exc:
        logger.error("{}", exc)
        return 2
    logger.info(
        "Added {} credit(s); user {} balance: {}",
        args.amount,
        args.user,
        service.get_balance(args.user),
    )
    return 0


def _cmd_jobs(service: ExportService, args: argparse.Namespace) -> int:
    jobs = service.list_jobs(args.user)
    if not jobs:
        logger.info("No exports for user {}", args.user)
    for job in jobs:
        logger.info(
            "  #{:<5} {:<10} {:<40} {}",
            job.id,
            job.status.value,
            job.query if not job.location else f"{job.query} in {job.location}",
            job.download_url or job.error_code or "",
        )
    return 0


def _cmd_history(service: ExportService, args: argparse.Namespace) -> int:
    for txn in service.credit_history(args.user):
        logger.info(
            "  {:%Y-%m-%d %H:%M}  {:<12} {:+5d}  {}",
            txn.created_at,
            txn.kind.value,
            txn.amount,
            txn.description or "",
        )
    logger.info("Balance: {} credit(s)", service.get_balance(args.user))
    return 0


def _cmd_stuck(service: ExportService, args: argparse.Namespace) -> int:
    stuck = service.stuck_jobs(args.older_than)
    for job in stuck:
        logger.warning(
            "  #{} user {} processing since {:%Y-%m-%d %H:%M:%S}",
            job.id,
            job.user_id,
            job.updated_at,
        )
    logger.info("{} stuck job(s)", len(stuck))
    return 0


# -- CLI -------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Google Business Profile listing export",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m gmb_export.main purchase --user 1 --amount 20\n"
            "  python -m gmb_export.main export --user 1 -q 'plumbers' -l 'New York City'\n"
            "  python -m gmb_export.main history --user 1\n"
        ),
    )
    parser.add_argument(
        "--database",
        type=str,
        default=None,
        help=f"SQLAlchemy database URL (default: {cfg.DATABASE_URL})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    export = sub.add_parser("export", help="Harvest listings into an .xlsx export")
    export.add_argument("--user", type=int, required=True)
    export.add_argument(
        "-q", "--query",
        type=str,
        required=True,
        help="Business category or keyword (e.g. 'plumbers')",
    )
    export.add_argument("-l", "--location", type=str, default=None)
    export.add_argument("--business-id", type=str, default=None)
    export.add_argument(
        "--max-results",
        type=int,
        default=cfg.DEFAULT_MAX_RESULTS,
        help=f"Maximum listings to harvest (default: {cfg.DEFAULT_MAX_RESULTS})",
    )
    export.add_argument(
        "--cost",
        type=int,
        default=cfg.DEFAULT_EXPORT_COST,
        help=f"Credits charged on success (default: {cfg.DEFAULT_EXPORT_COST})",
    )
    export.add_argument(
        "--no-headless",
        action="store_true",
        default=False,
        help="Run the browser in visible (headed) mode",
    )
    export.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help=f"Directory for .xlsx files (default: {cfg.EXPORTS_DIR})",
    )

    balance = sub.add_parser("balance", help="Show a user's credit balance")
    balance.add_argument("--user", type=int, required=True)

    purchase = sub.add_parser("purchase", help="Add credits to a user")
    purchase.add_argument("--user", type=int, required=True)
    purchase.add_argument("--amount", type=int, required=True)
    purchase.add_argument("--description", type=str, default=None)

    jobs = sub.add_parser("jobs", help="List a user's exports, newest first")
    jobs.add_argument("--user", type=int, required=True)

    history = sub.add_parser("history", help="Show a user's credit transactions")
    history.add_argument("--user", type=int, required=True)

    stuck = sub.add_parser("stuck", help="List jobs stuck in processing")
    stuck.add_argument(
        "--older-than",
        type=float,
        default=cfg.STUCK_JOB_TIMEOUT,
        help=f"Seconds without progress (default: {cfg.STUCK_JOB_TIMEOUT:.0f})",
    )
    return parser


def main() -> None:
    args = build_parser().parse_args()

    # -- Apply CLI overrides -----------------------------------------------
    if getattr(args, "no_headless", False):
        cfg.HEADLESS = False
    if getattr(args, "output_dir", None):
        cfg.EXPORTS_DIR = Path(args.output_dir)

    ErrorHandler.setup_logging()
    cfg.DATA_DIR.mkdir(parents=True, exist_ok=True)

    try:
        store = Store(args.database or cfg.DATABASE_URL)
        store.create_schema()
        service = ExportService(store, sink=LocalArtifactSink(cfg.EXPORTS_DIR))

        if args.command == "export":
            code = asyncio.run(_run_export(service, args))
        else:
            handler = {
                "balance": _cmd_balance,
                "purchase": _cmd_purchase,
                "jobs": _cmd_jobs,
                "history": _cmd_history,
                "stuck": _cmd_stuck,
            }[args.command]
            code = handler(service, args)
    except ExportError as exc:
        logger.error("[{}] {}", exc.code, exc)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
