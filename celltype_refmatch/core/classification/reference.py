"""Reference atlas and expression-matrix helpers.

Expression matrices are pandas DataFrames with genes as the row index and
samples as columns. AnnData objects (cells x genes) are transposed into that
orientation by the adapters below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import sparse

from .errors import ConfigurationError, InvalidLabelMappingError

PairGenes = Dict[Tuple[str, str], List[str]]
LabelsLike = Union[pd.Series, Sequence[str]]


def validate_expression_frame(df: pd.DataFrame, name: str = "expression matrix") -> pd.DataFrame:
    """Check a genes x samples frame and return it with string axes.

    Raises
    ------
    ConfigurationError
        If the frame is empty, has duplicate gene or sample identifiers,
        or holds non-numeric values.
    """
    if not isinstance(df, pd.DataFrame):
        raise ConfigurationError(f"{name} must be a pandas DataFrame, got {type(df).__name__}")
    if df.shape[0] == 0 or df.shape[1] == 0:
        raise ConfigurationError(f"{name} is empty (shape={df.shape})")

    out = df.copy()
    out.index = out.index.astype(str)
    out.columns = out.columns.astype(str)

    dup_genes = out.index[out.index.duplicated()].unique().tolist()
    if dup_genes:
        raise ConfigurationError(
            f"{name} has {len(dup_genes)} duplicated gene id(s): {dup_genes[:5]}"
        )
    dup_samples = out.columns[out.columns.duplicated()].unique().tolist()
    if dup_samples:
        raise ConfigurationError(
            f"{name} has {len(dup_samples)} duplicated sample id(s): {dup_samples[:5]}"
        )

    non_numeric = [c for c in out.columns if not pd.api.types.is_numeric_dtype(out[c])]
    if non_numeric:
        raise ConfigurationError(f"{name} has non-numeric columns: {non_numeric[:5]}")
    return out.astype(float)


def _as_label_series(labels: LabelsLike, columns: pd.Index, what: str) -> pd.Series:
    """Align a label vector or mapping to the reference sample order."""
    if isinstance(labels, pd.Series):
        series = labels.copy()
        series.index = series.index.astype(str)
        missing = columns.difference(series.index)
        if len(missing):
            raise ConfigurationError(
                f"{len(missing)} reference sample(s) have no {what} label: {list(missing[:5])}"
            )
        series = series.reindex(columns)
    else:
        values = list(labels)
        if len(values) != len(columns):
            raise ConfigurationError(
                f"Got {len(values)} {what} labels for {len(columns)} reference samples"
            )
        series = pd.Series(values, index=columns)

    if series.isna().any():
        raise ConfigurationError(f"{what} labels contain missing values")
    return series.astype(str).rename(what)


@dataclass
class ReferenceAtlas:
    """Labeled reference of pure cell-type expression profiles.

    Attributes
    ----------
    data : pd.DataFrame
        Expression matrix (genes x reference samples)
    types : pd.Series
        Fine label per reference sample
    main_types : pd.Series, optional
        Coarse label per reference sample
    de_genes : Dict[Tuple[str, str], List[str]], optional
        Precomputed genes up in the first label versus the second (fine taxonomy)
    de_genes_main : Dict[Tuple[str, str], List[str]], optional
        Same for the main taxonomy
    sd_thres : float, optional
        Standard deviation threshold for "sd" gene selection
    name : str
        Display name used in logs
    """

    data: pd.DataFrame
    types: LabelsLike
    main_types: Optional[LabelsLike] = None
    de_genes: Optional[PairGenes] = None
    de_genes_main: Optional[PairGenes] = None
    sd_thres: Optional[float] = None
    name: str = "reference"
    _validated: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.data = validate_expression_frame(self.data, name=f"{self.name} data")
        if not np.isfinite(self.data.to_numpy()).all():
            raise ConfigurationError(f"{self.name} data contains NaN or infinite values")
        self.types = _as_label_series(self.types, self.data.columns, "types")
        if self.main_types is not None:
            self.main_types = _as_label_series(self.main_types, self.data.columns, "main_types")

    @property
    def genes(self) -> pd.Index:
        return self.data.index

    @property
    def n_samples(self) -> int:
        return self.data.shape[1]

    def has_main_types(self) -> bool:
        return self.main_types is not None

    def label_mapping(self) -> Dict[str, List[str]]:
        """Map each fine label to the sorted main labels it co-occurs with."""
        if self.main_types is None:
            return {}
        pairs = pd.DataFrame({"fine": self.types, "main": self.main_types})
        grouped = pairs.groupby("fine", sort=True)["main"].unique()
        return {fine: sorted(mains) for fine, mains in grouped.items()}

    def validate(self, logger: Optional[logging.Logger] = None) -> None:
        """Check the fine-to-main mapping is many-to-one.

        Raises
        ------
        InvalidLabelMappingError
            If any fine label maps to several main labels.
        """
        logger = logger or logging.getLogger(__name__)
        if self.main_types is not None:
            conflicts = {
                fine: mains for fine, mains in self.label_mapping().items() if len(mains) > 1
            }
            if conflicts:
                raise InvalidLabelMappingError(conflicts)

        if not self._validated:
            logger.debug(
                "Reference '%s' validated: %d genes, %d samples, %d types%s",
                self.name,
                self.data.shape[0],
                self.n_samples,
                self.types.nunique(),
                f", {self.main_types.nunique()} main types" if self.main_types is not None else "",
            )
        self._validated = True

    def labels_for(self, granularity: str) -> pd.Series:
        """Label universe for the given granularity."""
        if granularity == "all-types":
            return self.types
        if granularity == "main-types":
            if self.main_types is None:
                raise ConfigurationError(
                    f"granularity='main-types' but reference '{self.name}' has no main_types"
                )
            return self.main_types
        raise ConfigurationError(f"Unknown granularity '{granularity}'")

    def precomputed_de(self, granularity: str) -> Optional[PairGenes]:
        """Precomputed pairwise gene sets for the given granularity, if any."""
        return self.de_genes_main if granularity == "main-types" else self.de_genes

    @classmethod
    def from_anndata(
        cls,
        adata: "anndata.AnnData",
        type_key: str,
        main_type_key: Optional[str] = None,
        layer: Optional[str] = None,
        name: str = "reference",
    ) -> "ReferenceAtlas":
        """Build an atlas from an AnnData with labels in ``adata.obs``.

        Precomputed pairwise genes are read from ``adata.uns['de_genes']``
        and ``adata.uns['de_genes_main']`` (nested dicts label -> label ->
        genes) and the threshold from ``adata.uns['sd_thres']`` when present.
        """
        for key in filter(None, (type_key, main_type_key)):
            if key not in adata.obs.columns:
                raise ConfigurationError(f"Missing label column '{key}' in reference obs")

        data = expression_from_anndata(adata, layer=layer)
        types = adata.obs[type_key].astype(str)
        main_types = adata.obs[main_type_key].astype(str) if main_type_key else None
        sd_thres = adata.uns.get("sd_thres")

        return cls(
            data=data,
            types=types,
            main_types=main_types,
            de_genes=_pair_genes_from_nested(adata.uns.get("de_genes")),
            de_genes_main=_pair_genes_from_nested(adata.uns.get("de_genes_main")),
            sd_thres=float(sd_thres) if sd_thres is not None else None,
            name=name,
        )


def _pair_genes_from_nested(nested: Optional[Dict]) -> Optional[PairGenes]:
    if not nested:
        return None
    out: PairGenes = {}
    for a, inner in nested.items():
        for b, genes in inner.items():
            out[(str(a), str(b))] = [str(g) for g in genes]
    return out


def expression_from_anndata(adata: "anndata.AnnData", layer: Optional[str] = None) -> pd.DataFrame:
    """Convert a cells x genes AnnData into a genes x cells DataFrame."""
    if layer and layer in adata.layers:
        matrix = adata.layers[layer]
    elif layer and layer != "X":
        raise ConfigurationError(
            f"Layer '{layer}' not found. Available layers: {list(adata.layers.keys())}"
        )
    else:
        matrix = adata.X
    matrix = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)

    return pd.DataFrame(
        matrix.T.astype(float),
        index=adata.var_names.astype(str),
        columns=adata.obs_names.astype(str),
    )


def aggregate_by_cluster(
    query: pd.DataFrame,
    clusters: Union[pd.Series, Dict[str, object]],
    logger: Optional[logging.Logger] = None,
) -> Tuple[pd.DataFrame, pd.Series]:
    """Average query columns per cluster.

    Missing values are skipped, so each gene is averaged over the cells
    that report it. Clusters keep the order of their first appearance in
    the query columns.

    Returns
    -------
    Tuple[pd.DataFrame, pd.Series]
        (genes x clusters mean matrix, number of cells per cluster)
    """
    logger = logger or logging.getLogger(__name__)
    assignment = pd.Series(clusters) if isinstance(clusters, dict) else clusters.copy()
    assignment.index = assignment.index.astype(str)

    missing = query.columns.difference(assignment.index)
    if len(missing):
        raise ConfigurationError(
            f"{len(missing)} query sample(s) have no cluster assignment: {list(missing[:5])}"
        )

    assignment = assignment.reindex(query.columns).astype(str)
    means = query.T.groupby(assignment.values, sort=False).mean().T
    counts = assignment.value_counts(sort=False).reindex(means.columns)

    logger.info(
        "Aggregated %d samples into %d clusters (sizes: min=%d, max=%d)",
        query.shape[1],
        means.shape[1],
        int(counts.min()),
        int(counts.max()),
    )
    return means, counts
