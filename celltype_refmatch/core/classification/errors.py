"""
Classification errors with machine-readable codes.

Per-sample errors (subclasses of SampleError) are caught by the batch worker
and recorded as failed entries; every other ClassificationError aborts the
whole call before any worker is dispatched.

Error Codes:
    E101_INSUFFICIENT_GENE_OVERLAP: Too few selected genes shared by reference and query
    E102_INVALID_LABEL_MAPPING: A fine label maps to more than one main label
    E103_EMPTY_CANDIDATE_SET: Fine-tuning removed every candidate label
    E104_ITERATION_CAP_EXCEEDED: Fine-tuning hit the round cap (flag only)
    E105_CONFIGURATION: Invalid or unknown configuration value
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Kinds of classification failure."""

    INSUFFICIENT_GENE_OVERLAP = "E101_INSUFFICIENT_GENE_OVERLAP"
    INVALID_LABEL_MAPPING = "E102_INVALID_LABEL_MAPPING"
    EMPTY_CANDIDATE_SET = "E103_EMPTY_CANDIDATE_SET"
    ITERATION_CAP_EXCEEDED = "E104_ITERATION_CAP_EXCEEDED"
    CONFIGURATION = "E105_CONFIGURATION"


class ClassificationError(Exception):
    """Base class for classification errors.

    Attributes
    ----------
    message : str
        Human-readable error description
    context : Dict[str, Any]
        Additional context for debugging
    """

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def error_code(self) -> str:
        return self.kind.value

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ConfigurationError(ClassificationError):
    """Unknown mode, out-of-range parameter or missing required input."""

    kind = ErrorKind.CONFIGURATION


class InvalidLabelMappingError(ClassificationError):
    """A fine label is assigned to more than one main label."""

    kind = ErrorKind.INVALID_LABEL_MAPPING

    def __init__(self, conflicts: Dict[str, List[str]]):
        preview = "; ".join(
            f"{fine} -> {sorted(mains)}" for fine, mains in sorted(conflicts.items())[:5]
        )
        super().__init__(
            f"{len(conflicts)} fine label(s) map to several main labels: {preview}",
            context={"conflicts": conflicts},
        )
        self.conflicts = conflicts


class SampleError(ClassificationError):
    """Error confined to one query sample."""


class InsufficientGeneOverlapError(SampleError):
    """Selected genes shared by reference and query are too few to rank."""

    kind = ErrorKind.INSUFFICIENT_GENE_OVERLAP

    def __init__(self, n_genes: int, min_overlap: int, candidates: Optional[List[str]] = None):
        super().__init__(
            f"Only {n_genes} usable gene(s) for scoring (need >= {min_overlap})",
            context={"n_genes": n_genes, "candidates": candidates or []},
        )
        self.n_genes = n_genes


class EmptyCandidateSetError(SampleError):
    """Fine-tuning reduced the candidate set to zero labels."""

    kind = ErrorKind.EMPTY_CANDIDATE_SET

    def __init__(self, trace: List[Any]):
        super().__init__(
            f"Candidate set became empty after {len(trace)} round(s)",
            context={"trace": trace},
        )
        self.trace = trace
