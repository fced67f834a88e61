"""Result types for classification.

A sample either classifies (ClassifiedSample) or fails (FailedSample); the
two are separate types rather than one record with nullable fields.
ClassificationBatch collects them in query order and renders tables.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .errors import ErrorKind


@dataclass(frozen=True)
class FineTuneRound:
    """One scoring round of fine-tuning.

    Attributes:
        round: Round number, starting at 1
        candidates: Labels scored in this round (sorted)
        n_genes: Number of genes used for correlation
        scores: Aggregated score per candidate label
    """

    round: int
    candidates: Tuple[str, ...]
    n_genes: int
    scores: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "round": self.round,
            "candidates": list(self.candidates),
            "n_genes": self.n_genes,
            "scores": dict(self.scores),
        }


@dataclass(frozen=True)
class ClassifiedSample:
    """Successful classification of one query sample.

    Attributes:
        sample_id: Query sample (or cluster) identifier
        label: Final label after fine-tuning
        first_label: Best label of the coarse pass
        scores: Coarse score per label in the label universe
        trace: Fine-tuning rounds in order
        iteration_cap_exceeded: Fine-tuning stopped at the round cap
        delta_next: Best minus second-best coarse score
        p_value: Chi-squared outlier p-value of the best coarse score
        n_cells: Cells averaged into this sample (cluster mode only)
    """

    sample_id: str
    label: str
    first_label: str
    scores: Dict[str, float]
    trace: Tuple[FineTuneRound, ...] = ()
    iteration_cap_exceeded: bool = False
    delta_next: float = float("nan")
    p_value: float = float("nan")
    n_cells: Optional[int] = None

    @property
    def ok(self) -> bool:
        return True

    @property
    def n_rounds(self) -> int:
        return len(self.trace)


@dataclass(frozen=True)
class FailedSample:
    """A query sample that could not be classified."""

    sample_id: str
    error_kind: ErrorKind
    message: str
    n_cells: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False


ClassificationResult = Union[ClassifiedSample, FailedSample]


@dataclass
class ClassificationBatch:
    """Results for a whole query, in query order.

    Attributes:
        results: One entry per query sample (or cluster)
        label_names: Sorted label universe used for scoring
        mode: "single-cell" or "cluster"
        granularity: "all-types" or "main-types"
        reference_name: Name of the reference atlas
        params: Parameters used for the run
        elapsed_seconds: Wall time of the run
    """

    results: List[ClassificationResult]
    label_names: Tuple[str, ...]
    mode: str
    granularity: str
    reference_name: str = "reference"
    params: Dict[str, Any] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def __len__(self) -> int:
        return len(self.results)

    @property
    def sample_ids(self) -> List[str]:
        return [r.sample_id for r in self.results]

    @property
    def succeeded(self) -> List[ClassifiedSample]:
        return [r for r in self.results if isinstance(r, ClassifiedSample)]

    @property
    def failed(self) -> List[FailedSample]:
        return [r for r in self.results if isinstance(r, FailedSample)]

    @property
    def n_succeeded(self) -> int:
        return len(self.succeeded)

    @property
    def n_failed(self) -> int:
        return len(self.failed)

    def labels(self) -> pd.Series:
        """Final label per sample (None for failed samples)."""
        return pd.Series(
            [r.label if isinstance(r, ClassifiedSample) else None for r in self.results],
            index=self.sample_ids,
            name="label",
        )

    def scores_frame(self) -> pd.DataFrame:
        """Coarse scores as samples x labels (NaN rows for failed samples)."""
        rows = [
            [r.scores.get(label, np.nan) for label in self.label_names]
            if isinstance(r, ClassifiedSample)
            else [np.nan] * len(self.label_names)
            for r in self.results
        ]
        return pd.DataFrame(rows, index=pd.Index(self.sample_ids, name="sample_id"),
                            columns=list(self.label_names))

    def labels_frame(self) -> pd.DataFrame:
        """One row per sample with labels, confidence, error and warning codes."""
        records: List[Dict[str, Any]] = []
        for r in self.results:
            if isinstance(r, ClassifiedSample):
                records.append({
                    "sample_id": r.sample_id,
                    "first_label": r.first_label,
                    "label": r.label,
                    "delta_next": r.delta_next,
                    "p_value": r.p_value,
                    "n_rounds": r.n_rounds,
                    "iteration_cap_exceeded": r.iteration_cap_exceeded,
                    "n_cells": r.n_cells,
                    "error_kind": None,
                    "warning": (
                        ErrorKind.ITERATION_CAP_EXCEEDED.value
                        if r.iteration_cap_exceeded else None
                    ),
                })
            else:
                records.append({
                    "sample_id": r.sample_id,
                    "first_label": None,
                    "label": None,
                    "delta_next": np.nan,
                    "p_value": np.nan,
                    "n_rounds": 0,
                    "iteration_cap_exceeded": False,
                    "n_cells": r.n_cells,
                    "error_kind": r.error_kind.value,
                    "warning": None,
                })
        return pd.DataFrame.from_records(records)

    def errors_frame(self) -> pd.DataFrame:
        """Failed samples with their error kind and message."""
        return pd.DataFrame.from_records(
            [
                {"sample_id": r.sample_id, "error_kind": r.error_kind.value, "message": r.message}
                for r in self.failed
            ],
            columns=["sample_id", "error_kind", "message"],
        )

    def traces_frame(self) -> pd.DataFrame:
        """Fine-tuning rounds in long format (one row per round per sample)."""
        records = [
            {
                "sample_id": r.sample_id,
                "round": step.round,
                "n_candidates": len(step.candidates),
                "candidates": ";".join(step.candidates),
                "n_genes": step.n_genes,
                "best_label": max(step.scores, key=step.scores.get),
                "best_score": max(step.scores.values()),
            }
            for r in self.succeeded
            for step in r.trace
        ]
        return pd.DataFrame.from_records(
            records,
            columns=["sample_id", "round", "n_candidates", "candidates",
                     "n_genes", "best_label", "best_score"],
        )

    def summary(self) -> Dict[str, Any]:
        """Counts and settings for logging or YAML export."""
        label_counts = pd.Series([r.label for r in self.succeeded], dtype=object).value_counts()
        return {
            "reference": self.reference_name,
            "mode": self.mode,
            "granularity": self.granularity,
            "n_samples": len(self.results),
            "n_succeeded": self.n_succeeded,
            "n_failed": self.n_failed,
            "n_iteration_cap_exceeded": sum(r.iteration_cap_exceeded for r in self.succeeded),
            "n_labels": len(self.label_names),
            "label_counts": {str(k): int(v) for k, v in label_counts.items()},
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }

    def write(self, output_dir: Union[str, Path], prefix: str = "", logger: Optional[logging.Logger] = None) -> Dict[str, Path]:
        """Write score, label, error and trace tables as CSV.

        Returns:
            Mapping of table name to written path
        """
        logger = logger or logging.getLogger(__name__)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        tables = {
            "scores": (self.scores_frame(), True),
            "labels": (self.labels_frame(), False),
            "errors": (self.errors_frame(), False),
            "finetune_trace": (self.traces_frame(), False),
        }
        written: Dict[str, Path] = {}
        for name, (df, with_index) in tables.items():
            path = output_dir / f"{prefix}{name}.csv"
            df.to_csv(path, index=with_index)
            written[name] = path
            logger.info("Wrote %s", path.name)
        return written
