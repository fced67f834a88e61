"""
Parallel per-sample classification.

Query samples are independent, so the engine:
1. Extracts one work item (a numpy vector) per query sample
2. Groups items into batches and classifies each batch in a worker
3. Places results back by the original sample index

The scorer, selector and fine-tuner are built before dispatch and are only
read by workers. Each batch owns its own gene-set and rank caches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
from joblib import Parallel, delayed

from .errors import SampleError
from .finetune import FineTuner, best_label
from .gene_selection import GeneSetCache, GeneSetSelector
from .results import ClassificationResult, ClassifiedSample, FailedSample
from .scoring import CorrelationScorer, RankCache, score_confidence


@dataclass
class SampleWorkItem:
    """Minimal data for classifying one query sample."""
    index: int  # Position in the query
    sample_id: str
    values: np.ndarray  # Expression on the context gene axis (NaN = absent)
    n_cells: Optional[int] = None


@dataclass
class ClassifierState:
    """Read-only components shared by every worker."""
    scorer: CorrelationScorer
    selector: GeneSetSelector
    finetuner: Optional[FineTuner] = None
    compute_pvalues: bool = True


def extract_work_items(
    aligned: np.ndarray,
    sample_ids: Sequence[str],
    n_cells: Optional[Sequence[int]] = None,
) -> List[SampleWorkItem]:
    """Split an aligned (n_genes, n_samples) matrix into work items."""
    return [
        SampleWorkItem(
            index=i,
            sample_id=str(sample_id),
            values=np.ascontiguousarray(aligned[:, i]),
            n_cells=int(n_cells[i]) if n_cells is not None else None,
        )
        for i, sample_id in enumerate(sample_ids)
    ]


def classify_sample(
    item: SampleWorkItem,
    state: ClassifierState,
    gene_cache: Optional[GeneSetCache] = None,
    rank_cache: Optional[RankCache] = None,
) -> ClassificationResult:
    """Coarse scoring plus optional fine-tuning for one sample.

    Per-sample errors are returned as FailedSample; anything else raises.
    """
    try:
        genes = state.selector.select(cache=gene_cache)
        scores = state.scorer.score_all(item.values, genes, rank_cache)
        first_label = best_label(scores)
        delta_next, p_value = score_confidence(scores)
        if not state.compute_pvalues:
            p_value = float("nan")

        if state.finetuner is None:
            return ClassifiedSample(
                sample_id=item.sample_id,
                label=first_label,
                first_label=first_label,
                scores=scores,
                delta_next=delta_next,
                p_value=p_value,
                n_cells=item.n_cells,
            )

        outcome = state.finetuner.run(
            item.values, scores, gene_cache, rank_cache, sample_id=item.sample_id
        )
        return ClassifiedSample(
            sample_id=item.sample_id,
            label=outcome.label,
            first_label=first_label,
            scores=scores,
            trace=tuple(outcome.trace),
            iteration_cap_exceeded=outcome.iteration_cap_exceeded,
            delta_next=delta_next,
            p_value=p_value,
            n_cells=item.n_cells,
        )
    except SampleError as e:
        return FailedSample(
            sample_id=item.sample_id,
            error_kind=e.kind,
            message=e.message,
            n_cells=item.n_cells,
        )


def worker_classify_batch(
    items: List[SampleWorkItem],
    state: ClassifierState,
) -> List[ClassificationResult]:
    """Classify a batch of samples (worker function for joblib)."""
    gene_cache: Dict = {}
    rank_cache: Dict = {}
    return [classify_sample(item, state, gene_cache, rank_cache) for item in items]


def run_classification_parallel(
    items: List[SampleWorkItem],
    state: ClassifierState,
    n_workers: int = 1,
    backend: str = "loky",
    batch_size: int = 50,
    logger: Optional[logging.Logger] = None,
) -> List[ClassificationResult]:
    """Classify all work items, returning results in item order.

    Parameters
    ----------
    items : List[SampleWorkItem]
        Work items from :func:`extract_work_items`
    state : ClassifierState
        Shared read-only components
    n_workers : int
        Number of parallel workers (1 = sequential)
    backend : str
        joblib backend
    batch_size : int
        Samples per worker call
    logger : logging.Logger, optional
        Logger for progress tracking

    Returns
    -------
    List[ClassificationResult]
        One result per item, at the item's original index
    """
    _logger = logger or logging.getLogger(__name__)
    if not items:
        return []

    batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]
    _logger.info(
        "Classifying %d samples in %d batches (batch_size=%d, workers=%d, backend=%s)",
        len(items), len(batches), batch_size, n_workers, backend,
    )

    start_time = time.time()
    if n_workers == 1 or len(batches) == 1:
        batch_results = [worker_classify_batch(batch, state) for batch in batches]
    else:
        batch_results = Parallel(n_jobs=n_workers, backend=backend, verbose=0)(
            delayed(worker_classify_batch)(batch, state) for batch in batches
        )
    _logger.info("Classification finished in %.2f seconds", time.time() - start_time)

    ordered: List[Optional[ClassificationResult]] = [None] * len(items)
    for batch, results in zip(batches, batch_results):
        for item, result in zip(batch, results):
            ordered[item.index] = result
    return ordered
