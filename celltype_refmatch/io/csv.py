"""CSV and h5ad I/O utilities for CellType-RefMatch.

Provides loaders for expression matrices, reference labels, cluster
assignments and gene lists, plus table writing helpers. Expression CSVs
are genes x samples with gene identifiers in the first column.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

from ..core.classification.errors import ConfigurationError
from ..core.classification.reference import ReferenceAtlas, expression_from_anndata

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_SAMPLE_COLUMN = "sample_id"


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _require_file(path: PathLike, what: str) -> Path:
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"{what} not found: {file_path}")
    return file_path


def load_expression_csv(path: PathLike) -> pd.DataFrame:
    """Read a genes x samples expression matrix.

    Parameters
    ----------
    path : PathLike
        CSV with gene identifiers in the first column and one column per sample.

    Returns
    -------
    pd.DataFrame
        Expression matrix indexed by gene.

    Raises
    ------
    ConfigurationError
        If the file does not exist or holds no data.
    """
    csv_path = _require_file(path, "Expression matrix")
    try:
        df = pd.read_csv(csv_path, index_col=0)
    except pd.errors.EmptyDataError:
        raise ConfigurationError(f"Expression matrix {csv_path} is empty") from None
    if df.empty:
        raise ConfigurationError(f"Expression matrix {csv_path} is empty")
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    logger.info("Loaded %s: %d genes x %d samples", csv_path.name, *df.shape)
    return df


def _load_sample_table(path: PathLike, what: str, sample_column: str) -> pd.DataFrame:
    csv_path = _require_file(path, what)
    try:
        df = pd.read_csv(csv_path, dtype=str)
    except pd.errors.EmptyDataError:
        raise ConfigurationError(f"{what} table {csv_path} is empty") from None
    if sample_column not in df.columns:
        raise ConfigurationError(
            f"Expected column `{sample_column}` in {csv_path}, found {list(df.columns)}"
        )
    return df.set_index(sample_column)


def load_cluster_assignment(
    path: PathLike,
    cluster_column: str = "cluster",
    sample_column: str = DEFAULT_SAMPLE_COLUMN,
) -> pd.Series:
    """Read a sample -> cluster table."""
    df = _load_sample_table(path, "Cluster assignment", sample_column)
    if cluster_column not in df.columns:
        raise ConfigurationError(f"Missing cluster column `{cluster_column}` in {path}")
    return df[cluster_column]


def load_gene_list(path: PathLike) -> List[str]:
    """Read one gene identifier per line, ignoring blanks and '#' comments."""
    txt_path = _require_file(path, "Gene list")
    genes = []
    for line in txt_path.read_text(encoding="utf-8").splitlines():
        value = line.split(",")[0].strip()
        if value and not value.startswith("#"):
            genes.append(value)
    return genes


def load_query(path: PathLike, layer: Optional[str] = None) -> pd.DataFrame:
    """Load a query expression matrix from .h5ad (cells x genes) or .csv."""
    query_path = _require_file(path, "Query")
    if query_path.suffix == ".h5ad":
        import scanpy as sc

        adata = sc.read_h5ad(query_path)
        logger.info("Loaded %s: %d cells, %d genes", query_path.name, adata.n_obs, adata.n_vars)
        return expression_from_anndata(adata, layer=layer)
    return load_expression_csv(query_path)


def load_reference(
    path: PathLike,
    type_key: str,
    main_type_key: Optional[str] = None,
    labels_path: Optional[PathLike] = None,
    layer: Optional[str] = None,
    sample_column: str = DEFAULT_SAMPLE_COLUMN,
) -> ReferenceAtlas:
    """Load a reference atlas.

    An .h5ad reference carries its labels in ``obs``; a CSV reference needs
    a labels table (``labels_path``) with a sample column and label columns.
    """
    ref_path = _require_file(path, "Reference")
    name = ref_path.stem
    if ref_path.suffix == ".h5ad":
        import scanpy as sc

        adata = sc.read_h5ad(ref_path)
        logger.info("Loaded reference %s: %d samples, %d genes", name, adata.n_obs, adata.n_vars)
        return ReferenceAtlas.from_anndata(
            adata, type_key=type_key, main_type_key=main_type_key, layer=layer, name=name
        )

    if labels_path is None:
        raise ConfigurationError("A CSV reference needs a labels table (labels_path)")
    data = load_expression_csv(ref_path)
    labels = _load_sample_table(labels_path, "Reference labels", sample_column)
    for key in filter(None, (type_key, main_type_key)):
        if key not in labels.columns:
            raise ConfigurationError(f"Missing label column `{key}` in {labels_path}")
    return ReferenceAtlas(
        data=data,
        types=labels[type_key],
        main_types=labels[main_type_key] if main_type_key else None,
        name=name,
    )


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path
