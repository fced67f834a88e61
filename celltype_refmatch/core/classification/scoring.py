"""Correlation scoring of query samples against reference labels.

Each query sample is compared with every reference sample of the candidate
labels using Spearman rank correlation over a gene set, and the per-sample
coefficients are reduced to one score per label with a quantile.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, MutableMapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ...utils.stats import (
    chisq_outlier_pvalue,
    rank_columns,
    spearman_to_columns,
    top_two_gap,
)
from .errors import ConfigurationError, InsufficientGeneOverlapError
from .reference import ReferenceAtlas

RankCache = MutableMapping[Tuple[bytes, Tuple[int, ...]], np.ndarray]


@dataclass
class ScoringContext:
    """Reference data aligned to the genes shared with the query.

    Built once before dispatch and shared read-only across workers.
    """
    matrix: np.ndarray  # Reference expression (n_common_genes, n_reference)
    gene_names: List[str]
    label_names: Tuple[str, ...]  # Sorted label universe
    label_codes: np.ndarray  # Label code per reference sample
    granularity: str

    @classmethod
    def build(
        cls,
        reference: ReferenceAtlas,
        query_genes: Sequence[str],
        granularity: str,
        logger: Optional[logging.Logger] = None,
    ) -> "ScoringContext":
        """Restrict the reference to genes present in the query."""
        logger = logger or logging.getLogger(__name__)
        labels = reference.labels_for(granularity)

        query_set = set(map(str, query_genes))
        common = [g for g in reference.genes if g in query_set]
        if not common:
            logger.warning(
                "Reference '%s' and query share no genes; every sample will fail",
                reference.name,
            )
        else:
            logger.info(
                "Gene overlap: %d of %d reference genes present in query",
                len(common),
                len(reference.genes),
            )

        label_names = tuple(sorted(labels.unique()))
        code_of = {label: code for code, label in enumerate(label_names)}
        label_codes = labels.map(code_of).to_numpy(dtype=np.int64)
        matrix = reference.data.loc[common].to_numpy(dtype=float)

        return cls(
            matrix=matrix,
            gene_names=common,
            label_names=label_names,
            label_codes=label_codes,
            granularity=granularity,
        )

    @property
    def n_genes(self) -> int:
        return len(self.gene_names)

    @property
    def n_labels(self) -> int:
        return len(self.label_names)

    def label_code(self, label: str) -> int:
        try:
            return self.label_names.index(label)
        except ValueError:
            raise ConfigurationError(
                f"Label '{label}' is not in the {self.granularity} label universe"
            ) from None

    def codes_for(self, labels: Sequence[str]) -> List[int]:
        """Sorted label codes for a candidate set."""
        return sorted(self.label_code(label) for label in labels)

    def align_query(self, query: pd.DataFrame) -> np.ndarray:
        """Query values on the context gene axis (n_common_genes, n_samples)."""
        return query.reindex(self.gene_names).to_numpy(dtype=float)


class CorrelationScorer:
    """Scores one query sample against candidate reference labels.

    Parameters
    ----------
    context : ScoringContext
        Aligned reference data
    quantile : float
        Quantile of the per-label coefficient distribution used as score
    min_overlap : int
        Minimum number of usable genes required to score
    """

    def __init__(
        self,
        context: ScoringContext,
        quantile: float = 0.8,
        min_overlap: int = 2,
        logger: Optional[logging.Logger] = None,
    ):
        self.context = context
        self.quantile = quantile
        self.min_overlap = min_overlap
        self.logger = logger or logging.getLogger(__name__)

    def usable_genes(self, query_values: np.ndarray, gene_idx: np.ndarray) -> np.ndarray:
        """Selected genes that carry a finite value for this sample."""
        gene_idx = np.asarray(gene_idx, dtype=np.int64)
        return gene_idx[np.isfinite(query_values[gene_idx])]

    def score(
        self,
        query_values: np.ndarray,
        gene_idx: np.ndarray,
        candidates: Sequence[str],
        rank_cache: Optional[RankCache] = None,
    ) -> Dict[str, float]:
        """Aggregated correlation per candidate label.

        Args:
            query_values: Sample values on the context gene axis (NaN = absent)
            gene_idx: Indices of the selected genes on the context gene axis
            candidates: Labels to score
            rank_cache: Optional per-worker cache of ranked reference blocks

        Returns:
            Dict mapping label -> score, in sorted label order

        Raises:
            InsufficientGeneOverlapError: fewer than min_overlap usable genes
        """
        ctx = self.context
        codes = ctx.codes_for(candidates)
        usable = self.usable_genes(query_values, gene_idx)
        if usable.size < self.min_overlap:
            raise InsufficientGeneOverlapError(
                n_genes=int(usable.size),
                min_overlap=self.min_overlap,
                candidates=[ctx.label_names[c] for c in codes],
            )

        sample_cols = np.flatnonzero(np.isin(ctx.label_codes, codes))
        ref_ranks = self._reference_ranks(usable, sample_cols, tuple(codes), rank_cache)
        coefs = spearman_to_columns(query_values[usable], ref_ranks)
        sample_codes = ctx.label_codes[sample_cols]

        scores: Dict[str, float] = {}
        for code in codes:
            values = coefs[sample_codes == code]
            scores[ctx.label_names[code]] = float(np.quantile(values, self.quantile))
        return scores

    def score_all(
        self,
        query_values: np.ndarray,
        gene_idx: np.ndarray,
        rank_cache: Optional[RankCache] = None,
    ) -> Dict[str, float]:
        """Score against the whole label universe (the coarse pass)."""
        return self.score(query_values, gene_idx, self.context.label_names, rank_cache)

    def _reference_ranks(
        self,
        usable: np.ndarray,
        sample_cols: np.ndarray,
        codes: Tuple[int, ...],
        rank_cache: Optional[RankCache],
    ) -> np.ndarray:
        key = (usable.tobytes(), codes)
        if rank_cache is not None and key in rank_cache:
            return rank_cache[key]
        ranks = rank_columns(self.context.matrix[np.ix_(usable, sample_cols)])
        if rank_cache is not None:
            rank_cache[key] = ranks
        return ranks


def score_confidence(scores: Dict[str, float]) -> Tuple[float, float]:
    """Gap to the runner-up and chi-squared outlier p-value of the best score."""
    values = list(scores.values())
    return top_two_gap(values), chisq_outlier_pvalue(values)
