"""Iterative fine-tuning of a sample's label.

Starting from the coarse scores over the whole label universe, each round
keeps the labels scoring within ``threshold`` of the best, re-selects genes
for the surviving candidates and re-scores them. The loop ends when one
label remains, or when two remain and have been re-scored against each
other.

Elimination rules:
1. Keep every label with score >= best - threshold
2. If nothing was removed, drop the single lowest-scoring label
   (ties: the lexicographically last of the lowest is dropped)
3. Ties for the best label go to the lexicographically first label
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .errors import EmptyCandidateSetError
from .gene_selection import GeneSetCache, GeneSetSelector
from .results import FineTuneRound
from .scoring import CorrelationScorer, RankCache


def best_label(scores: Dict[str, float]) -> str:
    """Highest-scoring label; ties go to the first label in sorted order."""
    labels = sorted(scores)
    values = np.array([scores[label] for label in labels], dtype=float)
    return labels[int(np.argmax(values))]


def margin_cut(scores: Dict[str, float], threshold: float) -> List[str]:
    """Labels scoring within ``threshold`` of the best, sorted."""
    top = max(scores.values())
    return sorted(label for label, value in scores.items() if value >= top - threshold)


def drop_lowest(scores: Dict[str, float], labels: Sequence[str]) -> List[str]:
    """Remove the single lowest-scoring label from ``labels``."""
    lowest_value = min(scores[label] for label in labels)
    lowest = max(label for label in labels if scores[label] == lowest_value)
    return sorted(label for label in labels if label != lowest)


@dataclass
class FineTuneOutcome:
    """Final label with the rounds that produced it."""

    label: str
    trace: List[FineTuneRound] = field(default_factory=list)
    iteration_cap_exceeded: bool = False


class FineTuner:
    """Narrows the candidate label set of one sample round by round.

    Parameters
    ----------
    scorer : CorrelationScorer
        Scorer bound to the aligned reference
    selector : GeneSetSelector
        Provides the gene set for each candidate set
    threshold : float
        Margin below the best score within which labels are kept
    max_rounds : int, optional
        Round cap; reaching it returns the best label with a flag set.
        None uses the number of starting candidates
    """

    def __init__(
        self,
        scorer: CorrelationScorer,
        selector: GeneSetSelector,
        threshold: float = 0.05,
        max_rounds: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.scorer = scorer
        self.selector = selector
        self.threshold = threshold
        self.max_rounds = max_rounds
        self.logger = logger or logging.getLogger(__name__)

    def run(
        self,
        query_values: np.ndarray,
        initial_scores: Dict[str, float],
        gene_cache: Optional[GeneSetCache] = None,
        rank_cache: Optional[RankCache] = None,
        sample_id: str = "",
    ) -> FineTuneOutcome:
        """Fine-tune one sample starting from its coarse scores.

        Raises
        ------
        InsufficientGeneOverlapError
            If a round's gene set has too few usable genes for this sample.
        EmptyCandidateSetError
            If a round leaves no candidate (internal invariant violation).
        """
        candidates = sorted(initial_scores)
        scores = dict(initial_scores)
        trace: List[FineTuneRound] = []

        if len(candidates) == 1:
            return FineTuneOutcome(label=candidates[0])

        max_rounds = self.max_rounds if self.max_rounds is not None else len(candidates)
        for round_no in range(1, max_rounds + 1):
            current = {label: scores[label] for label in candidates}
            retained = margin_cut(current, self.threshold)
            if len(retained) == len(candidates):
                retained = drop_lowest(current, candidates)

            if not retained:
                trace_dump = [step.to_dict() for step in trace]
                self.logger.error(
                    "Sample %s: empty candidate set at round %d; trace=%s",
                    sample_id, round_no, trace_dump,
                )
                raise EmptyCandidateSetError(trace_dump)

            if len(retained) == 1:
                return FineTuneOutcome(label=retained[0], trace=trace)

            genes = self.selector.select_for_finetune(retained, gene_cache)
            scores = self.scorer.score(query_values, genes, retained, rank_cache)
            trace.append(FineTuneRound(
                round=round_no,
                candidates=tuple(retained),
                n_genes=int(self.scorer.usable_genes(query_values, genes).size),
                scores=scores,
            ))
            candidates = retained

            if len(candidates) == 2:
                return FineTuneOutcome(label=best_label(scores), trace=trace)

        self.logger.warning(
            "Sample %s: fine-tuning hit the %d-round cap with %d candidates left",
            sample_id, max_rounds, len(candidates),
        )
        return FineTuneOutcome(
            label=best_label({label: scores[label] for label in candidates}),
            trace=trace,
            iteration_cap_exceeded=True,
        )
