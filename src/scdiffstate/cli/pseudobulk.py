"""
CLI for pseudobulk differential state analysis.

Aggregates counts per cluster and sample, fits one model per gene and
cluster (quasi-likelihood NB or limma-trend), and writes one results file
per comparison plus the exclusion record.

Usage:
    scdiffstate pseudobulk \\
        --input counts.csv --metadata cells.csv \\
        --output results/pb \\
        --contrast stim_vs_ctrl stim ctrl
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from scdiffstate.cli._common import add_input_arguments, apply_config, configure_logging, load_input_table
from scdiffstate.cli._validators import _n_jobs, _non_negative_int, _positive_int
from scdiffstate.exceptions import DSError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the pseudobulk subcommand."""
    parser = subparsers.add_parser(
        "pseudobulk",
        help="Pseudobulk differential state analysis (qlnb / limma-trend)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_input_arguments(parser)

    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory")
    parser.add_argument("--method", default="qlnb", choices=["qlnb", "limma-trend"],
                        help="DS method (default: qlnb)")
    parser.add_argument("--min-cells", type=_non_negative_int, default=10,
                        help="Drop cluster-samples with fewer cells (default: 10)")
    parser.add_argument("--min-samples-expressed", type=_positive_int, default=None,
                        help="Genes need non-zero counts in this many samples "
                             "(default: smallest group size)")
    parser.add_argument("--coef", nargs="+", default=None,
                        help="Design coefficient(s) to test (default: last)")
    parser.add_argument("--contrast", nargs=3, action="append", default=None,
                        metavar=("NAME", "LEVEL_A", "LEVEL_B"),
                        help="Test LEVEL_A - LEVEL_B of group_id (repeatable)")
    parser.add_argument("--fdr-method", default="BH", choices=["BH", "BY", "bonferroni"],
                        help="Multiple testing correction (default: BH)")
    parser.add_argument("--n-jobs", type=_n_jobs, default=1,
                        help="Parallel workers for per-gene fits (default: 1)")
    parser.add_argument("--bind", default="row", choices=["row", "col"],
                        help="Layout of the combined results table (default: row)")
    parser.add_argument("--frequencies", action="store_true",
                        help="Attach per-sample/group expression frequencies")
    parser.add_argument("--means", action="store_true",
                        help="Attach per-sample CPM")

    parser.set_defaults(func=run_pseudobulk)


def run_pseudobulk(args: argparse.Namespace) -> int:
    """Execute the pseudobulk command."""
    from scdiffstate.io import write_results
    from scdiffstate.stats.aggregation import aggregate_data
    from scdiffstate.stats.formatting import format_results
    from scdiffstate.stats.pseudobulk_ds import pseudobulk_ds

    configure_logging(args.verbose)

    try:
        args = apply_config(args, section='pseudobulk')
        if not args.output:
            raise ValueError("--output is required (via CLI or config file)")

        table = load_input_table(args)
        pb = aggregate_data(table, assay='counts', fun='sum')

        contrast = None
        if args.contrast:
            contrast = {name: (level_a, level_b) for name, level_a, level_b in args.contrast}

        result = pseudobulk_ds(
            pb,
            coef=args.coef,
            contrast=contrast,
            method=args.method,
            min_cells=args.min_cells,
            min_samples_expressed=args.min_samples_expressed,
            fdr_method=args.fdr_method,
            n_jobs=args.n_jobs,
        )

        write_results(result, args.output)
        combined = format_results(
            result,
            bind=args.bind,
            table=table,
            frequencies=args.frequencies,
            means=args.means,
        )
        write_results(combined, Path(args.output) / "results.tsv")
    except (DSError, FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"pseudobulk failed: {e}")
        return 1

    for comparison in result.comparisons:
        n_sig = sum(len(g) for g in result.significant_genes(comparison).values())
        logger.info(f"{comparison}: {n_sig} cluster-gene pairs with p_adj.loc < 0.05")
    logger.info(f"Done: {len(result.exclusions)} exclusions recorded")
    return 0
