"""Classification engine for reference-based cell-type annotation.

This module provides the main ClassificationEngine class that orchestrates
the pipeline: input validation, optional cluster averaging, gene selection,
correlation scoring, fine-tuning and result collection.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from .config import ClassificationParams
from .errors import ConfigurationError
from .finetune import FineTuner
from .gene_selection import GeneSetSelector
from .parallel import ClassifierState, extract_work_items, run_classification_parallel
from .reference import ReferenceAtlas, aggregate_by_cluster, validate_expression_frame
from .results import ClassificationBatch
from .scoring import CorrelationScorer, ScoringContext

ClusterAssignment = Union[pd.Series, Dict[str, object]]


class ClassificationEngine:
    """Classifies query samples against a labeled reference atlas.

    The engine:
    1. Validates parameters and the reference label mapping
    2. Averages query columns per cluster (cluster mode)
    3. Aligns reference and query genes and materializes gene sets
    4. Scores and fine-tunes every sample in parallel workers
    5. Returns a ClassificationBatch in query order

    Example:
        >>> engine = ClassificationEngine(
        ...     reference=atlas,
        ...     params=ClassificationParams(gene_selection="de", quantile=0.8),
        ... )
        >>> batch = engine.run(query_df)
        >>> batch.labels_frame().head()
    """

    def __init__(
        self,
        reference: ReferenceAtlas,
        params: Optional[ClassificationParams] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize classification engine.

        Args:
            reference: Reference atlas to classify against
            params: Classification parameters (uses defaults if None)
            logger: Logger instance
        """
        self.reference = reference
        self.params = params or ClassificationParams()
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        query: pd.DataFrame,
        clusters: Optional[ClusterAssignment] = None,
        granularity: Optional[str] = None,
        output_dir: Optional[Path] = None,
    ) -> ClassificationBatch:
        """Run the full classification pipeline.

        Args:
            query: Expression matrix (genes x samples)
            clusters: Sample -> cluster mapping (required in cluster mode)
            granularity: Overrides params.granularity
            output_dir: Where to write CSVs (None = don't write)

        Returns:
            ClassificationBatch with one result per sample (or cluster)

        Raises:
            ConfigurationError: invalid parameters or inputs
            InvalidLabelMappingError: reference fine labels map to several main labels
        """
        params = self.params
        granularity = granularity or params.granularity
        start_time = time.time()

        params.validate()
        self.reference.validate(self.logger)
        self.reference.labels_for(granularity)

        self.logger.info("=" * 70)
        self.logger.info("CLASSIFICATION ENGINE")
        self.logger.info("=" * 70)
        self.logger.info("Reference: %s (%d samples)", self.reference.name, self.reference.n_samples)
        self.logger.info("Mode: %s, granularity: %s", params.mode, granularity)
        self.logger.info(
            "Gene selection: %s, quantile: %.2f, fine_tune: %s (threshold=%.3f)",
            params.gene_selection, params.quantile, params.fine_tune, params.fine_tune_threshold,
        )
        self.logger.info("")

        # 1. Prepare query
        self.logger.info("Phase 1: Preparing query...")
        query, n_cells = self._prepare_query(query, clusters)

        # 2. Align reference and materialize gene sets
        self.logger.info("Phase 2: Aligning reference and selecting genes...")
        context, state = self.build_state(query.index, granularity)

        # 3. Score and fine-tune
        self.logger.info("Phase 3: Scoring %d samples against %d labels...",
                         query.shape[1], context.n_labels)
        items = extract_work_items(
            context.align_query(query),
            list(query.columns),
            n_cells=n_cells.tolist() if n_cells is not None else None,
        )
        results = run_classification_parallel(
            items,
            state,
            n_workers=params.worker_count,
            backend=params.backend,
            batch_size=params.batch_size,
            logger=self.logger,
        )

        batch = ClassificationBatch(
            results=results,
            label_names=context.label_names,
            mode=params.mode,
            granularity=granularity,
            reference_name=self.reference.name,
            params=params.to_dict(),
            elapsed_seconds=time.time() - start_time,
        )

        # 4. Report
        for failed in batch.failed:
            self.logger.warning(
                "Sample %s failed: %s (%s)", failed.sample_id, failed.error_kind.value, failed.message
            )
        if output_dir:
            prefix = "main_" if granularity == "main-types" else ""
            batch.write(output_dir, prefix=prefix, logger=self.logger)

        self.logger.info("")
        self.logger.info("Classification complete!")
        self.logger.info(
            "  Samples: %d, succeeded: %d, failed: %d, labels used: %d",
            len(batch), batch.n_succeeded, batch.n_failed,
            len({r.label for r in batch.succeeded}),
        )
        return batch

    def run_all(
        self,
        query: pd.DataFrame,
        clusters: Optional[ClusterAssignment] = None,
        output_dir: Optional[Path] = None,
    ) -> Dict[str, ClassificationBatch]:
        """Classify with the fine taxonomy and, when available, the main one."""
        granularities = ["all-types"]
        if self.reference.has_main_types():
            granularities.append("main-types")
        return {
            granularity: self.run(query, clusters, granularity=granularity, output_dir=output_dir)
            for granularity in granularities
        }

    def build_state(
        self,
        query_genes: pd.Index,
        granularity: str,
    ) -> Tuple[ScoringContext, ClassifierState]:
        """Build the read-only scorer, selector and fine-tuner for a run."""
        params = self.params
        context = ScoringContext.build(self.reference, query_genes, granularity, logger=self.logger)
        selector = GeneSetSelector.from_params(
            context,
            params,
            precomputed_de=self.reference.precomputed_de(granularity),
            atlas_sd_thres=self.reference.sd_thres,
            logger=self.logger,
        )
        scorer = CorrelationScorer(
            context,
            quantile=params.quantile,
            min_overlap=params.min_overlap,
            logger=self.logger,
        )
        finetuner = None
        if params.fine_tune:
            finetuner = FineTuner(
                scorer,
                selector,
                threshold=params.fine_tune_threshold,
                max_rounds=params.max_finetune_rounds,
                logger=self.logger,
            )
        return context, ClassifierState(
            scorer=scorer,
            selector=selector,
            finetuner=finetuner,
            compute_pvalues=params.compute_pvalues,
        )

    def validate_input(
        self,
        query: pd.DataFrame,
        clusters: Optional[ClusterAssignment] = None,
    ) -> List[str]:
        """Validate inputs without running.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        try:
            self.params.validate()
        except ConfigurationError as e:
            errors.append(str(e))
        try:
            query = validate_expression_frame(query, name="query")
        except ConfigurationError as e:
            errors.append(str(e))
            return errors

        shared = query.index.intersection(self.reference.genes)
        if len(shared) < self.params.min_overlap:
            errors.append(
                f"Only {len(shared)} genes shared between query and reference "
                f"'{self.reference.name}'"
            )
        if self.params.mode == "cluster" and clusters is None:
            errors.append("mode='cluster' requires a cluster assignment")
        if self.params.granularity == "main-types" and not self.reference.has_main_types():
            errors.append(f"Reference '{self.reference.name}' has no main_types")
        return errors

    def _prepare_query(
        self,
        query: pd.DataFrame,
        clusters: Optional[ClusterAssignment],
    ) -> Tuple[pd.DataFrame, Optional[pd.Series]]:
        query = validate_expression_frame(query, name="query")
        if self.params.mode == "single-cell":
            self.logger.info("  %d genes x %d samples", *query.shape)
            return query, None
        if clusters is None:
            raise ConfigurationError("mode='cluster' requires a cluster assignment")
        means, counts = aggregate_by_cluster(query, clusters, logger=self.logger)
        return means, counts
