"""Statistical utilities for CellType-RefMatch.

Provides rank transforms, Spearman correlation against reference columns and score-confidence statistics.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

import numpy as np
from scipy.stats import chi2, rankdata

ArrayLike = Union[Iterable[float], np.ndarray]


def rank_columns(matrix: np.ndarray) -> np.ndarray:
    """Rank each column of a 2-D array, averaging ranks over ties.

    Parameters
    ----------
    matrix : np.ndarray
        Array of shape (n_genes, n_samples) or a 1-D vector.

    Returns
    -------
    np.ndarray
        Float array of the same shape holding 1-based average ranks.
    """
    arr = np.asarray(matrix, dtype=float)
    if arr.ndim == 1:
        return rankdata(arr, method="average")
    if arr.shape[1] == 0:
        return arr.copy()
    return rankdata(arr, method="average", axis=0)


def _center_and_scale(ranks: np.ndarray) -> np.ndarray:
    """Center ranks and divide by their L2 norm (column-wise for 2-D input)."""
    centered = ranks - ranks.mean(axis=0)
    norms = np.sqrt((centered ** 2).sum(axis=0))
    with np.errstate(invalid="ignore", divide="ignore"):
        return centered / norms


def spearman_to_columns(
    query_values: ArrayLike,
    reference_ranks: np.ndarray,
) -> np.ndarray:
    """Spearman correlation of one vector against every reference column.

    The reference is passed already ranked so a shared rank matrix can be
    reused across many query vectors.

    Parameters
    ----------
    query_values : ArrayLike
        Raw expression values of length n_genes.
    reference_ranks : np.ndarray
        Output of :func:`rank_columns` with shape (n_genes, n_reference).

    Returns
    -------
    np.ndarray
        Correlation coefficients of length n_reference. Coefficients that
        are undefined (a constant vector) are returned as 0.0.
    """
    query_ranks = rankdata(np.asarray(query_values, dtype=float), method="average")
    if query_ranks.shape[0] != reference_ranks.shape[0]:
        raise ValueError(
            f"Query has {query_ranks.shape[0]} genes but reference ranks "
            f"have {reference_ranks.shape[0]}"
        )

    q = _center_and_scale(query_ranks)
    r = _center_and_scale(reference_ranks)
    coefs = q @ r
    coefs = np.where(np.isfinite(coefs), coefs, 0.0)
    return np.clip(coefs, -1.0, 1.0)


def chisq_outlier_pvalue(scores: ArrayLike) -> float:
    """Chi-squared outlier test for the highest score in a row.

    The statistic is ``(max - mean)^2 / var`` with one degree of freedom,
    so a small p-value means the best label stands out from the rest.

    Parameters
    ----------
    scores : ArrayLike
        Aggregated scores of one sample against all labels.

    Returns
    -------
    float
        p-value, or NaN when fewer than 3 finite scores or zero variance.
    """
    arr = np.asarray(list(scores), dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size < 3:
        return float("nan")
    variance = arr.var(ddof=1)
    if variance == 0:
        return float("nan")
    statistic = (arr.max() - arr.mean()) ** 2 / variance
    return float(chi2.sf(statistic, df=1))


def top_two_gap(scores: Sequence[float]) -> float:
    """Difference between the best and second-best finite score."""
    arr = np.asarray(list(scores), dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size < 2:
        return float("nan")
    top = np.sort(arr)[-2:]
    return float(top[1] - top[0])
