#!/usr/bin/env python3
"""
SQL++ cookbook runner.

Replays a catalog of documented SQL++ examples against a Couchbase query
service and validates each result:

    runner run --catalog catalogs/travel_sample.json [--filter 'airline-*'] [--concurrency 4]
    runner list --catalog catalogs/travel_sample.json

Exit codes: 0 all examples passed, 1 some failed, 2 some errored or the
run could not start (bad catalog, bad configuration).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from cookbook import __version__
from cookbook.core import environment
from cookbook.core.logging import setup_logging
from cookbook.core.prometheus_metrics import write_metrics_file
from cookbook.eval.catalog_loader import CatalogLoader
from cookbook.eval.models import Example
from cookbook.eval.runner import (
    EXIT_ERRORED,
    CookbookRunner,
    exit_code_for,
    format_summary_table,
    write_report,
)
from cookbook.services.exceptions import CatalogParseError, ConfigurationError
from cookbook.services.query_client import QueryClient, QueryClientConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runner", description="Replay SQL++ cookbook examples.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=environment.get_log_format(),
        help="Log output format (env COOKBOOK_LOG_FORMAT)",
    )
    parser.add_argument(
        "--log-level",
        default=environment.get_log_level(),
        help="Log level (env COOKBOOK_LOG_LEVEL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute the catalog against the query service")
    _add_catalog_arguments(run_parser)
    run_parser.add_argument(
        "--concurrency",
        type=_positive_int,
        default=environment.get_concurrency(),
        help="Worker tasks for independent examples (env COOKBOOK_CONCURRENCY)",
    )
    run_parser.add_argument("--url", default=None, help="Query service URL (env COUCHBASE_QUERY_URL)")
    run_parser.add_argument("--username", default=None, help="env COUCHBASE_USERNAME")
    run_parser.add_argument("--password", default=None, help="env COUCHBASE_PASSWORD")
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Default per-statement timeout in seconds (env COOKBOOK_QUERY_TIMEOUT_S)",
    )
    run_parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Retries for transient failures (env COOKBOOK_MAX_RETRIES)",
    )
    run_parser.add_argument("--report", type=Path, default=None, help="Write a JSON report here")
    run_parser.add_argument(
        "--metrics-file",
        type=Path,
        default=None,
        help="Write Prometheus metrics in textfile format here",
    )

    list_parser = subparsers.add_parser("list", help="Print the execution order without running")
    _add_catalog_arguments(list_parser)
    return parser


def _add_catalog_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--catalog", type=Path, required=True, help="Catalog JSON or YAML file")
    parser.add_argument(
        "--filter",
        dest="pattern",
        default=None,
        help="Glob on example ids, comma-separated; setup examples are included automatically",
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def load_examples(catalog: Path, pattern: Optional[str]) -> list[Example]:
    loader = CatalogLoader()
    examples = loader.load(catalog)
    if pattern:
        examples = loader.select(examples, pattern)
        if not examples:
            raise ConfigurationError(f"No example id matches '{pattern}'")
    return examples


async def run_command(args: argparse.Namespace) -> int:
    examples = load_examples(args.catalog, args.pattern)
    config = QueryClientConfig.from_environment(
        url=args.url,
        username=args.username,
        password=args.password,
        timeout_s=args.timeout,
        max_retries=args.max_retries,
    )

    async with QueryClient(config) as client:
        runner = CookbookRunner(client, concurrency=args.concurrency)
        outcomes = await runner.run(examples)

    # Summary
    logger.info("=" * 70)
    logger.info("SUMMARY")
    logger.info("=" * 70)
    for line in format_summary_table(outcomes).splitlines():
        logger.info(line)

    if args.report is not None:
        path = write_report(
            args.report,
            outcomes,
            catalog=str(args.catalog),
            metadata={"url": config.url, "concurrency": args.concurrency, "aborted": runner.abort_reason},
        )
        logger.info(f"Report written to {path}")
    if args.metrics_file is not None:
        write_metrics_file(args.metrics_file)

    if runner.aborted:
        logger.error(f"Run aborted: {runner.abort_reason}")
    return exit_code_for(outcomes)


def list_command(args: argparse.Namespace) -> int:
    examples = load_examples(args.catalog, args.pattern)
    for index, example in enumerate(examples, start=1):
        setup = f"  (after {', '.join(example.setup_examples)})" if example.setup_examples else ""
        print(f"{index:>3}. {example.id}{setup}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        if args.command == "list":
            return list_command(args)
        return asyncio.run(run_command(args))
    except (CatalogParseError, ConfigurationError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_ERRORED
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}", exc_info=True)
        return EXIT_ERRORED


if __name__ == "__main__":
    sys.exit(main())
