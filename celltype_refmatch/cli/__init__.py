"""Command-line interface for CellType-RefMatch.

Provides CLI commands for classifying query data against a reference.

Example Usage
-------------
    # From command line:
    celltype-refmatch --help
    celltype-refmatch classify --query query.h5ad --reference ref.h5ad \
        --type-key label.fine --main-type-key label.main --out out/
    celltype-refmatch validate-reference --reference ref.h5ad --type-key label.fine
"""

__version__ = "0.1.0"

from .main import cli, main

__all__ = [
    "__version__",
    "cli",
    "main",
]
