"""
scdiffstate CLI - differential state analysis of multi-sample single-cell data.

Commands:
    scdiffstate aggregate   - Pseudobulk aggregation (cluster x sample)
    scdiffstate pseudobulk  - Pseudobulk DS tests (qlnb / limma-trend)
    scdiffstate mixed       - Cell-level mixed-model DS tests
    scdiffstate simulate    - Write a synthetic dataset
"""

import argparse
import sys
from typing import List, Optional


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for scdiffstate."""
    parser = argparse.ArgumentParser(
        prog="scdiffstate",
        description="Differential state analysis for multi-sample, multi-group scRNA-seq",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  aggregate   Aggregate cells into cluster x sample pseudobulk tables
  pseudobulk  Pseudobulk differential state analysis
  mixed       Mixed-model differential state analysis on cells
  simulate    Write a synthetic counts + cell annotation pair

Examples:
  scdiffstate simulate --output data/sim --de-gene cluster1 gene007
  scdiffstate aggregate -i data/sim/counts.csv -m data/sim/cells.csv -o results/pb
  scdiffstate pseudobulk -i data/sim/counts.csv -m data/sim/cells.csv -o results/ds
  scdiffstate mixed --config ds.yaml --method vst
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from scdiffstate.cli import aggregate, mixed, pseudobulk, simulate
    aggregate.register_parser(subparsers)
    pseudobulk.register_parser(subparsers)
    mixed.register_parser(subparsers)
    simulate.register_parser(subparsers)

    raw_args = list(sys.argv[1:] if args is None else args)
    parsed_args = parser.parse_args(raw_args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Raw arguments after the subcommand, to tell explicit flags from defaults
    parsed_args.cli_args = raw_args[raw_args.index(parsed_args.command) + 1:]

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
