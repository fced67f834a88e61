"""Reference-based classification module.

Assigns each query sample (cell or cluster) the most similar label of a
reference atlas using Spearman correlation over selected genes, quantile
aggregation per label and iterative fine-tuning.

Example workflow:
    >>> from celltype_refmatch.core.classification import (
    ...     ClassificationEngine, ClassificationParams, ReferenceAtlas,
    ... )
    >>>
    >>> atlas = ReferenceAtlas(data=ref_df, types=fine, main_types=main)
    >>> params = ClassificationParams(mode="cluster", gene_selection="de")
    >>> engine = ClassificationEngine(atlas, params)
    >>> batch = engine.run(query_df, clusters=cluster_series)
    >>> print(f"{batch.n_succeeded} classified, {batch.n_failed} failed")
"""

from .config import (
    ClassificationParams,
    default_worker_count,
)
from .engine import ClassificationEngine
from .errors import (
    ClassificationError,
    ConfigurationError,
    EmptyCandidateSetError,
    ErrorKind,
    InsufficientGeneOverlapError,
    InvalidLabelMappingError,
    SampleError,
)
from .finetune import (
    FineTuneOutcome,
    FineTuner,
    best_label,
    drop_lowest,
    margin_cut,
)
from .gene_selection import (
    GeneSetSelector,
    n_de_genes_per_pair,
)
from .parallel import (
    ClassifierState,
    SampleWorkItem,
    classify_sample,
    extract_work_items,
    run_classification_parallel,
    worker_classify_batch,
)
from .reference import (
    ReferenceAtlas,
    aggregate_by_cluster,
    expression_from_anndata,
    validate_expression_frame,
)
from .results import (
    ClassificationBatch,
    ClassificationResult,
    ClassifiedSample,
    FailedSample,
    FineTuneRound,
)
from .scoring import (
    CorrelationScorer,
    ScoringContext,
    score_confidence,
)

__all__ = [
    # Engine
    "ClassificationEngine",
    "ClassificationParams",
    "default_worker_count",
    # Reference
    "ReferenceAtlas",
    "aggregate_by_cluster",
    "expression_from_anndata",
    "validate_expression_frame",
    # Gene selection
    "GeneSetSelector",
    "n_de_genes_per_pair",
    # Scoring
    "CorrelationScorer",
    "ScoringContext",
    "score_confidence",
    # Fine-tuning
    "FineTuner",
    "FineTuneOutcome",
    "best_label",
    "margin_cut",
    "drop_lowest",
    # Parallel
    "ClassifierState",
    "SampleWorkItem",
    "classify_sample",
    "extract_work_items",
    "run_classification_parallel",
    "worker_classify_batch",
    # Results
    "ClassificationBatch",
    "ClassificationResult",
    "ClassifiedSample",
    "FailedSample",
    "FineTuneRound",
    # Errors
    "ClassificationError",
    "ConfigurationError",
    "EmptyCandidateSetError",
    "ErrorKind",
    "InsufficientGeneOverlapError",
    "InvalidLabelMappingError",
    "SampleError",
]
