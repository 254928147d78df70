"""
CLI for pseudobulk aggregation.

Usage:
    scdiffstate aggregate \\
        --input counts.csv --metadata cells.csv \\
        --output results/pseudobulk --fun sum
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from scdiffstate.cli._common import add_input_arguments, apply_config, configure_logging, load_input_table
from scdiffstate.exceptions import DSError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the aggregate subcommand."""
    parser = subparsers.add_parser(
        "aggregate",
        help="Aggregate cells into cluster x sample pseudobulk tables",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_input_arguments(parser)

    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory (one TSV per cluster)")
    parser.add_argument("--assay", default="counts",
                        help="Layer to aggregate (default: counts)")
    parser.add_argument("--fun", default="sum",
                        choices=["sum", "mean", "median", "prop.detected", "num.detected"],
                        help="Reducer (default: sum)")
    parser.add_argument("--by", nargs="+", default=["cluster_id", "sample_id"],
                        help="Grouping keys: cluster key then sample key (default: cluster_id sample_id)")

    parser.set_defaults(func=run_aggregate)


def run_aggregate(args: argparse.Namespace) -> int:
    """Execute the aggregate command."""
    from scdiffstate.io import write_pseudobulk
    from scdiffstate.stats.aggregation import aggregate_data

    configure_logging(args.verbose)

    try:
        args = apply_config(args, section='aggregate')
        if not args.output:
            raise ValueError("--output is required (via CLI or config file)")

        table = load_input_table(args)
        pb = aggregate_data(table, assay=args.assay, fun=args.fun, by=args.by)
        write_pseudobulk(pb, args.output)
    except (DSError, FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"aggregate failed: {e}")
        return 1

    logger.info(f"Wrote {len(pb)} pseudobulk tables to {args.output}")
    return 0
