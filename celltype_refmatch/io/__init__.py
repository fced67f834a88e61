"""I/O utilities for CellType-RefMatch.

Provides run logging and records, CSV/h5ad loading and table writing.
"""

from .logging import get_run_logger, log_failures, write_run_summary
from .csv import (
    ensure_output_dir,
    load_cluster_assignment,
    load_expression_csv,
    load_gene_list,
    load_query,
    load_reference,
    write_dataframe,
)

__all__ = [
    # Logging
    "get_run_logger",
    "log_failures",
    "write_run_summary",
    # CSV / h5ad I/O
    "ensure_output_dir",
    "load_cluster_assignment",
    "load_expression_csv",
    "load_gene_list",
    "load_query",
    "load_reference",
    "write_dataframe",
]
