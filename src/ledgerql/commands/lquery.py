"""Command line interface of the engine.

Runs queries against the ledger store and drives the indexer,
using the settings of :class:`ledgerql.config.Settings`.

The results of queries are printed to the console in a tabular format
using the :mod:`ledgerql.utils.tabulate` module.
"""

import argparse
import json
import sys

import structlog
from pydantic import ValidationError

from ledgerql.config import Settings
from ledgerql.indexer import ChainRPCError
from ledgerql.logging import configure_logging
from ledgerql.sandbox import ExecutionOptions
from ledgerql.service import LedgerQLService
from ledgerql.utils import tabulate

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerql", description="Query the StarkNet ledger with SQL."
    )
    parser.add_argument(
        "--database-url", help="Database to use, overrides the DATABASE_URL environment variable."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    query = commands.add_parser("query", help="Run a SQL query in the sandbox.")
    query.add_argument("sql", type=str, help="The SQL query to execute.")
    query.add_argument("--user", help="User running the query, for rate limiting.")
    query.add_argument("--max-rows", type=int, default=1000, help="Maximum rows returned.")
    query.add_argument("--timeout-ms", type=int, default=10000, help="Execution time budget.")
    query.add_argument("--no-cache", action="store_true", help="Bypass the result cache.")
    query.add_argument("--json", action="store_true", help="Print the full result as JSON.")

    validate = commands.add_parser("validate", help="Check a SQL query without running it.")
    validate.add_argument("sql", type=str, help="The SQL query to validate.")

    commands.add_parser("stats", help="Print cache, data and indexing statistics.")
    commands.add_parser("sync", help="Index the blocks produced since the last sync.")

    backfill = commands.add_parser("backfill", help="Index a range of historical blocks.")
    backfill.add_argument("from_block", type=int, help="First block of the range.")
    backfill.add_argument("to_block", type=int, help="Last block of the range, included.")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse the command line arguments and run the requested command."""
    args = build_parser().parse_args(argv)

    settings = Settings.from_env()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})
    if args.command in ("sync", "backfill"):
        settings = settings.model_copy(update={"enable_indexer": True})
    configure_logging(json_output=settings.log_json, level=settings.log_level)

    service = LedgerQLService.from_settings(settings)
    try:
        return COMMANDS[args.command](service, args)
    finally:
        service.close()


def run_query(service: LedgerQLService, args: argparse.Namespace) -> int:
    try:
        options = ExecutionOptions(
            user_id=args.user,
            use_cache=not args.no_cache,
            max_rows=args.max_rows,
            timeout_ms=args.timeout_ms,
        )
    except ValidationError as exc:
        problems = "; ".join(f"{err['loc'][0]}: {err['msg']}" for err in exc.errors())
        print(f"Invalid query options, {problems}")
        return 1
    result = service.execute_query(args.sql, options)
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1

    if not result.success:
        print(f"{result.error.kind.value}: {result.error.user_message}")
        for suggestion in result.suggestions:
            print(f"  - {suggestion}")
        return 1

    print(tabulate.tabulate(result.data))
    print(f"({result.row_count} rows in {result.execution_time_ms:.1f}ms)")
    for warning in result.warnings:
        print(f"warning: {warning}")
    return 0


def run_validate(service: LedgerQLService, args: argparse.Namespace) -> int:
    validation = service.validate_query(args.sql)
    print(json.dumps(validation.to_dict(), indent=2, default=str))
    return 0 if validation.is_valid else 1


def run_stats(service: LedgerQLService, args: argparse.Namespace) -> int:
    print(json.dumps(service.get_stats(), indent=2, default=str))
    return 0


def run_sync(service: LedgerQLService, args: argparse.Namespace) -> int:
    try:
        indexed = service.indexer.sync_once()
    except ChainRPCError as exc:
        logger.error("Sync failed", error=str(exc))
        return 1
    print(f"Indexed {indexed} blocks, last synced block {service.indexer.sync_state.last_synced_block}")
    return 0


def run_backfill(service: LedgerQLService, args: argparse.Namespace) -> int:
    try:
        report = service.indexer.backfill(args.from_block, args.to_block)
    except ValueError as exc:
        print(f"Invalid backfill, {exc}")
        return 1
    print(f"Indexed {len(report.indexed)} blocks, {len(report.failed)} failed")
    if report.failed:
        print("Failed blocks: " + ", ".join(str(n) for n in report.failed))
    return 0 if report.success else 1


COMMANDS = {
    "query": run_query,
    "validate": run_validate,
    "stats": run_stats,
    "sync": run_sync,
    "backfill": run_backfill,
}


if __name__ == "__main__":
    sys.exit(main())
