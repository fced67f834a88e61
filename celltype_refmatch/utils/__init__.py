"""Utility functions for CellType-RefMatch.

Provides rank-correlation and score-confidence helpers used by the classifier.
"""

from .stats import (
    rank_columns,
    spearman_to_columns,
    chisq_outlier_pvalue,
    top_two_gap,
)

__all__ = [
    "rank_columns",
    "spearman_to_columns",
    "chisq_outlier_pvalue",
    "top_two_gap",
]
