#!/usr/bin/env python3
"""
CLI entry point for compiling filter expressions into search queries.

Prints the request body for a list of filters and an optional timeframe,
using field metadata from a saved field capabilities response when given.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from filter_dsl import FieldCache, build_query, parse_timeframe, validate_timeframe
from filter_dsl.config import load_config
from filter_dsl.models import ConfigError, QueryBuildError, TimeframeError
from filter_dsl.parser import parse_date

logger = logging.getLogger("compile_query")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


def load_field_cache(fields_file: str) -> FieldCache:
    """Load field metadata from a saved field capabilities response.

    Args:
        fields_file: Path to a JSON file with a ``fields`` object

    Returns:
        Populated FieldCache

    Raises:
        ValueError: If the file is missing or malformed
    """
    path = Path(fields_file)

    if not path.exists():
        raise ValueError(f"Fields file not found: {fields_file}")

    with open(path, 'r') as f:
        try:
            content = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in fields file: {e}")

    cache = FieldCache()
    cache.set_defaults()
    count = cache.populate_from_field_caps(content)
    logger.debug("Loaded metadata for %d fields from %s", count, fields_file)
    return cache


def parse_now(value: Optional[str]) -> datetime:
    """Parse the --now argument (unix timestamp or RFC3339) into local time."""
    if not value:
        return datetime.now().astimezone()
    millis = parse_date(value)
    if millis is None:
        raise ValueError(f"Invalid --now value: {value}")
    return datetime.fromtimestamp(millis / 1000).astimezone()


def compile_filters(
    filters: List[str],
    size: int,
    timeframe: str,
    now: datetime,
    field_cache: Optional[FieldCache] = None,
) -> Dict[str, Any]:
    """Compile filters, logging each failure before re-raising."""
    logger.debug("Compiling %d filters (size=%d, timeframe=%r)", len(filters), size, timeframe)
    try:
        return build_query(filters, size, timeframe, field_cache, now)
    except QueryBuildError as e:
        for position, error in e.errors:
            logger.debug("filter[%d] %r rejected: %s", position, filters[position], error.message)
        raise


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Filter DSL - Compile filter expressions into search queries"
    )

    parser.add_argument(
        "-f", "--filter",
        action="append",
        default=[],
        dest="filters",
        help="Filter token such as status=active or age>=21 (repeatable)",
    )

    parser.add_argument(
        "-s", "--size",
        type=int,
        help="Number of documents to request (defaults to config)",
    )

    parser.add_argument(
        "-t", "--timeframe",
        help="Timeframe such as today, week, 12h or 7d (defaults to config)",
    )

    parser.add_argument(
        "--now",
        help="Reference time as unix timestamp or RFC3339",
    )

    parser.add_argument(
        "--fields-file",
        help="JSON field capabilities response used for type-aware parsing",
    )

    parser.add_argument(
        "-c", "--config",
        help="YAML configuration file",
    )

    parser.add_argument(
        "--check-timeframe",
        metavar="TIMEFRAME",
        help="Only validate a timeframe and print its duration",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.check_timeframe is not None:
        try:
            validate_timeframe(args.check_timeframe)
            duration = parse_timeframe(args.check_timeframe)
        except TimeframeError as e:
            print(json.dumps({"error": str(e)}), file=sys.stderr)
            return 1
        print(json.dumps({
            "timeframe": args.check_timeframe,
            "duration_seconds": duration.total_seconds(),
        }, indent=2))
        return 0

    try:
        config = load_config(args.config)
        field_cache = load_field_cache(args.fields_file) if args.fields_file else None
        now = parse_now(args.now)
    except (ConfigError, ValueError) as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1

    size = args.size if args.size is not None else config.search.default_num_results
    timeframe = args.timeframe if args.timeframe is not None else config.search.default_timeframe

    if size > config.search.max_results:
        print(json.dumps({
            "error": f"size {size} exceeds max_results {config.search.max_results}"
        }), file=sys.stderr)
        return 1

    try:
        query = compile_filters(args.filters, size, timeframe, now, field_cache)
    except (QueryBuildError, TimeframeError) as e:
        print(json.dumps({"error": str(e)}, indent=2), file=sys.stderr)
        return 1

    print(json.dumps(query, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
