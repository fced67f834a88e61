"""Configuration for reference-based classification.

All parameters are explicit values threaded into the engine; nothing is
read from process-wide state.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .errors import ConfigurationError

MODES = ("single-cell", "cluster")
GENE_SELECTION_MODES = ("sd", "de", "explicit")
GRANULARITIES = ("all-types", "main-types")
BACKENDS = ("loky", "threading", "multiprocessing")

DEFAULT_SD_THRESHOLD = 1.0


def default_worker_count() -> int:
    """Available CPUs minus one, never below one."""
    return max(1, (os.cpu_count() or 1) - 1)


@dataclass
class ClassificationParams:
    """Parameters for the classification pipeline.

    Attributes
    ----------
    mode : str
        "single-cell" classifies each query column; "cluster" first averages
        columns per cluster
    gene_selection : str
        "sd" (variance threshold), "de" (pairwise differential genes) or
        "explicit" (use ``genes``)
    genes : List[str], optional
        Explicit gene list for gene_selection="explicit"
    quantile : float
        Quantile used to aggregate per-sample correlations within a label
    fine_tune : bool
        Run iterative fine-tuning after the coarse pass
    fine_tune_threshold : float
        Labels scoring within this margin of the best are kept each round
    granularity : str
        "all-types" uses the fine taxonomy, "main-types" the coarse one
    worker_count : int
        Number of parallel workers (1 = sequential)
    backend : str
        joblib backend for parallel dispatch
    batch_size : int
        Query samples per worker call
    sd_threshold : float, optional
        Standard deviation cutoff for "sd" mode (overrides the atlas value)
    de_base_genes : int
        Base of the per-pair differential gene count rule
    de_min_genes : int
        Floor of the per-pair differential gene count rule
    min_overlap : int
        Minimum usable genes to score a sample
    max_finetune_rounds : int, optional
        Round cap for fine-tuning. None caps at one round per label, which a
        run that drops at least one label per round never reaches
    compute_pvalues : bool
        Attach chi-squared outlier p-values to each result
    """

    mode: str = "single-cell"
    gene_selection: str = "de"
    genes: Optional[List[str]] = None
    quantile: float = 0.8
    fine_tune: bool = True
    fine_tune_threshold: float = 0.05
    granularity: str = "all-types"
    worker_count: int = field(default_factory=default_worker_count)
    backend: str = "loky"
    batch_size: int = 50
    sd_threshold: Optional[float] = None
    de_base_genes: int = 500
    de_min_genes: int = 10
    min_overlap: int = 2
    max_finetune_rounds: Optional[int] = None
    compute_pvalues: bool = True

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        if self.mode not in MODES:
            raise ConfigurationError(f"Unknown mode '{self.mode}' (expected one of {MODES})")
        if self.gene_selection not in GENE_SELECTION_MODES:
            raise ConfigurationError(
                f"Unknown gene_selection '{self.gene_selection}' "
                f"(expected one of {GENE_SELECTION_MODES})"
            )
        if self.gene_selection == "explicit" and not self.genes:
            raise ConfigurationError("gene_selection='explicit' requires a non-empty genes list")
        if self.granularity not in GRANULARITIES:
            raise ConfigurationError(
                f"Unknown granularity '{self.granularity}' (expected one of {GRANULARITIES})"
            )
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unknown backend '{self.backend}' (expected one of {BACKENDS})")
        if not 0.0 <= self.quantile <= 1.0:
            raise ConfigurationError(f"quantile must be in [0, 1], got {self.quantile}")
        if self.fine_tune_threshold < 0:
            raise ConfigurationError("fine_tune_threshold must be non-negative")
        if self.worker_count < 1:
            raise ConfigurationError("worker_count must be >= 1")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1")
        if self.sd_threshold is not None and self.sd_threshold < 0:
            raise ConfigurationError("sd_threshold must be non-negative")
        if self.de_min_genes < 1 or self.de_base_genes < 1:
            raise ConfigurationError("de_min_genes and de_base_genes must be >= 1")
        if self.min_overlap < 2:
            raise ConfigurationError("min_overlap must be >= 2 to compute a rank correlation")
        if self.max_finetune_rounds is not None and self.max_finetune_rounds < 1:
            raise ConfigurationError("max_finetune_rounds must be >= 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationParams":
        """Build params from a plain dict, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown classification parameter(s): {unknown}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ClassificationParams":
        """Load parameters from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Handle nested classification section
        if "classification" in data:
            data = data["classification"] or {}

        return cls.from_dict(data)

    def with_overrides(self, **overrides: Any) -> "ClassificationParams":
        """Return a copy with non-None overrides applied."""
        data = self.to_dict()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return ClassificationParams.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
