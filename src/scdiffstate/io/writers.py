"""
Writers for pseudobulk tables and DS results.

Everything is written as delimited text (tab for .tsv, comma for .csv) so
the output opens in R, Excel or pandas alike.

Output layout for a ``DSResult`` written to a directory:

    {directory}/{comparison}.tsv    row-bound results of one comparison
    {directory}/exclusions.tsv      every excluded sample / cluster / gene

Examples:
    >>> from scdiffstate.io.writers import write_results
    >>> write_results(result, Path("results"))
    >>> write_results(result.to_dataframe(), Path("all_results.tsv"))
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import pandas as pd

from scdiffstate.io.loaders import delimiter_for
from scdiffstate.stats.aggregation import PseudobulkTable
from scdiffstate.stats.differential import DSResult

logger = logging.getLogger(__name__)

__all__ = ['write_results', 'write_pseudobulk']


def _safe_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]+', '_', str(name))


def write_results(result: DSResult | pd.DataFrame, path: Path) -> list[Path]:
    """
    Write DS results.

    Args:
        result: A formatted DataFrame (written to ``path`` as a file) or a
            DSResult (``path`` is a directory; one file per comparison plus
            exclusions.tsv)
        path: Output file or directory

    Returns:
        Paths written

    Raises:
        TypeError: If result is neither a DataFrame nor a DSResult
    """
    from scdiffstate.stats.formatting import format_results

    path = Path(path)

    if isinstance(result, pd.DataFrame):
        path.parent.mkdir(parents=True, exist_ok=True)
        result.to_csv(path, sep=delimiter_for(path), index=False)
        logger.info(f"Wrote {len(result)} rows to {path}")
        return [path]

    if not isinstance(result, DSResult):
        raise TypeError(f"result must be DSResult or DataFrame, got {type(result)}")

    path.mkdir(parents=True, exist_ok=True)
    written = []
    for comparison in result.comparisons:
        single = DSResult(
            tables={comparison: result.tables[comparison]},
            method=result.method,
            params=result.params,
        )
        out = path / f"{_safe_name(comparison)}.tsv"
        format_results(single, bind='row').to_csv(out, sep='\t', index=False)
        written.append(out)

    out = path / "exclusions.tsv"
    result.exclusions_frame().to_csv(out, sep='\t', index=False)
    written.append(out)

    logger.info(f"Wrote {len(written)} result files to {path}")
    return written


def write_pseudobulk(pb: PseudobulkTable, directory: Path) -> list[Path]:
    """
    Write one genes × samples table per cluster, plus the cell counts.

    Files: ``{cluster}.tsv`` and ``n_cells.tsv``.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    for cluster, frame in pb.items():
        out = directory / f"{_safe_name(cluster)}.tsv"
        frame.to_csv(out, sep='\t', index_label='gene')
        written.append(out)

    out = directory / "n_cells.tsv"
    pb.n_cells.to_csv(out, sep='\t')
    written.append(out)

    logger.info(f"Wrote {len(pb)} pseudobulk tables to {directory}")
    return written
