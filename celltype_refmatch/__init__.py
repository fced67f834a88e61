"""CellType-RefMatch: Reference-based cell-type annotation for single-cell data.

This package provides tools for:
- Variable-gene selection against a labeled reference atlas
- Spearman correlation scoring with quantile aggregation per label
- Iterative fine-tuning that narrows candidate labels round by round
- Single-cell and cluster-level classification with parallel workers

Example usage:
    >>> from celltype_refmatch.core.classification import (
    ...     ClassificationEngine, ClassificationParams, ReferenceAtlas,
    ... )
    >>>
    >>> atlas = ReferenceAtlas(data=ref_df, types=ref_labels)
    >>> engine = ClassificationEngine(atlas, ClassificationParams(quantile=0.8))
    >>> batch = engine.run(query_df)
    >>> batch.labels_frame()
"""

__version__ = "0.1.0"
