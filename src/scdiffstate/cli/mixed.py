"""
CLI for mixed-model differential state analysis on cells.

Fits ``expression ~ 1 + group_id + (1 | sample_id)`` per gene and cluster
with the selected family and writes one results file per comparison plus the
exclusion record.

Usage:
    scdiffstate mixed \\
        --input counts.csv --metadata cells.csv \\
        --output results/mm --method dream --ddf satterthwaite
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from scdiffstate.cli._common import add_input_arguments, apply_config, configure_logging, load_input_table
from scdiffstate.cli._validators import _n_jobs, _positive_float, _positive_int
from scdiffstate.exceptions import DSError

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the mixed subcommand."""
    parser = subparsers.add_parser(
        "mixed",
        help="Mixed-model differential state analysis (dream / vst / poisson / nbinom)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_input_arguments(parser)

    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory")
    parser.add_argument("--method", default="dream",
                        choices=["dream", "vst", "poisson", "nbinom"],
                        help="Model family (default: dream)")
    parser.add_argument("--n-cells", type=_positive_int, default=10,
                        help="Minimum cells per sample in a cluster (default: 10)")
    parser.add_argument("--n-samples", type=_positive_int, default=2,
                        help="Minimum samples meeting --n-cells (default: 2)")
    parser.add_argument("--min-count", type=_positive_float, default=1,
                        help="Count threshold for an expressing cell (default: 1)")
    parser.add_argument("--min-cells", type=_positive_int, default=20,
                        help="Minimum expressing cells per gene (default: 20)")
    parser.add_argument("--ddf", default="satterthwaite",
                        choices=["satterthwaite", "between-within", "residual"],
                        help="Degrees of freedom for LMM tests (default: satterthwaite)")
    parser.add_argument("--coef", nargs="+", default=None,
                        help="Design coefficient(s) to test (default: last)")
    parser.add_argument("--fdr-method", default="BH", choices=["BH", "BY", "bonferroni"],
                        help="Multiple testing correction (default: BH)")
    parser.add_argument("--n-jobs", type=_n_jobs, default=1,
                        help="Parallel workers for per-gene fits (default: 1)")
    parser.add_argument("--bind", default="row", choices=["row", "col"],
                        help="Layout of the combined results table (default: row)")

    parser.set_defaults(func=run_mixed)


def run_mixed(args: argparse.Namespace) -> int:
    """Execute the mixed command."""
    from scdiffstate.io import write_results
    from scdiffstate.stats.formatting import format_results
    from scdiffstate.stats.mixed_ds import mixed_model_ds

    configure_logging(args.verbose)

    try:
        args = apply_config(args, section='mixed')
        if not args.output:
            raise ValueError("--output is required (via CLI or config file)")

        table = load_input_table(args)
        result = mixed_model_ds(
            table,
            method=args.method,
            n_cells=args.n_cells,
            n_samples=args.n_samples,
            min_count=args.min_count,
            min_cells=args.min_cells,
            ddf=args.ddf,
            coef=args.coef,
            fdr_method=args.fdr_method,
            n_jobs=args.n_jobs,
        )

        write_results(result, args.output)
        write_results(format_results(result, bind=args.bind), Path(args.output) / "results.tsv")
    except (DSError, FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"mixed failed: {e}")
        return 1

    logger.info(
        f"Done: {len(result.clusters)} cluster(s) tested, "
        f"{len(result.exclusions)} exclusions"
    )
    return 0
