"""Run logging and run records for CellType-RefMatch.

Each CLI run gets its own timestamped log file in the output directory,
a JSON-lines record of failed samples and a YAML summary of the batches.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple, Union

import yaml

from ..core.classification.results import ClassificationBatch

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def get_run_logger(
    output_dir: PathLike,
    command: str,
    name: str = "celltype_refmatch",
    level: int = logging.INFO,
) -> Tuple[logging.Logger, Path]:
    """Attach a fresh file handler for one run of ``command``.

    The log is written to ``<output_dir>/<command>_<YYYYmmdd_HHMMSS>.log`` so
    earlier runs into the same directory keep their logs. Handlers left by a
    previous run in the same process are closed and replaced.

    Returns
    -------
    Tuple[logging.Logger, Path]
        The configured logger and its log file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    log_path = output_dir / f"{command}_{datetime.now():%Y%m%d_%H%M%S}.log"

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger, log_path


def log_failures(path: PathLike, batches: Mapping[str, ClassificationBatch]) -> int:
    """Append one JSON line per failed sample; return how many were written."""
    records = [
        {
            "granularity": granularity,
            "reference": batch.reference_name,
            "sample_id": failed.sample_id,
            "error_kind": failed.error_kind.value,
            "message": failed.message,
            "n_cells": failed.n_cells,
        }
        for granularity, batch in batches.items()
        for failed in batch.failed
    ]
    if not records:
        return 0

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, default=str))
            handle.write("\n")
    return len(records)


def write_run_summary(
    path: PathLike,
    batches: Mapping[str, ClassificationBatch],
    inputs: Dict[str, Any],
) -> Path:
    """Write the parameters and per-granularity summaries as one YAML document."""
    first = next(iter(batches.values()))
    record = {
        "created": datetime.now().isoformat(timespec="seconds"),
        "inputs": {k: str(v) for k, v in inputs.items()},
        "params": first.params,
        "results": {g: b.summary() for g, b in batches.items()},
    }
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(record, handle, sort_keys=False)
    return path
