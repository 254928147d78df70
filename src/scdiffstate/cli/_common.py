"""Argument groups and helpers shared by the scdiffstate subcommands."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from scdiffstate.core.expression import ExpressionTable

logger = logging.getLogger(__name__)


def add_input_arguments(parser: argparse.ArgumentParser) -> None:
    """Config, input and label-column options."""
    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    inputs = parser.add_argument_group("input")
    inputs.add_argument("--input", "-i", type=Path, default=None,
                        help="Counts file (genes x cells, CSV/TSV)")
    inputs.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Cell annotation file (cells x annotations, CSV/TSV)")
    inputs.add_argument("--h5ad", type=Path, default=None,
                        help="AnnData file (alternative to --input/--metadata)")
    inputs.add_argument("--sample-col", default="sample_id",
                        help="Metadata column holding sample ids (default: sample_id)")
    inputs.add_argument("--cluster-col", default="cluster_id",
                        help="Metadata column holding cluster ids (default: cluster_id)")
    inputs.add_argument("--group-col", default="group_id",
                        help="Metadata column holding group ids (default: group_id)")

    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )


def apply_config(args: argparse.Namespace, section: str) -> argparse.Namespace:
    """
    Load ``--config`` (if given) and merge it under the CLI arguments.

    Raises:
        FileNotFoundError, ValueError: On unreadable or invalid config files
    """
    if not args.config:
        return args

    from scdiffstate.cli.config import load_config, merge_config_with_args, validate_config

    logger.info(f"Loading configuration from: {args.config}")
    config = load_config(args.config)
    validate_config(config)
    cli_args = getattr(args, 'cli_args', None)
    if cli_args is None:
        cli_args = sys.argv[2:]
    return merge_config_with_args(config, args, cli_args, section=section)


def label_columns(args: argparse.Namespace) -> dict[str, str]:
    """DS label -> metadata column renames requested on the command line."""
    mapping = {
        'sample_id': args.sample_col,
        'cluster_id': args.cluster_col,
        'group_id': args.group_col,
    }
    return {label: column for label, column in mapping.items() if column != label}


def load_input_table(args: argparse.Namespace) -> ExpressionTable:
    """
    Load the expression table named by --h5ad or --input/--metadata.

    Raises:
        ValueError: If neither input form is given
    """
    from scdiffstate.io import load_counts_csv, load_h5ad

    if args.h5ad:
        table = load_h5ad(args.h5ad)
        renames = {column: label for label, column in label_columns(args).items()}
        if renames:
            meta = table.cell_metadata.rename(columns=renames)
            table = ExpressionTable(
                layers=table.layers,
                gene_ids=table.gene_ids,
                cell_ids=table.cell_ids,
                cell_metadata=meta,
            )
        return table

    if not args.input or not args.metadata:
        raise ValueError("--input and --metadata (or --h5ad) are required (via CLI or config file)")
    return load_counts_csv(args.input, args.metadata, label_columns=label_columns(args) or None)
