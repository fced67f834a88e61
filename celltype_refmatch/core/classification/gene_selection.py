"""Variable-gene selection for correlation scoring.

Three modes are supported:

- "sd": genes whose standard deviation across all reference samples exceeds
  a threshold. Independent of the candidate labels, computed once.
- "de": for every pair of candidate labels, the top-N genes by difference in
  label means in each direction, unioned. Depends on the candidate set.
- "explicit": a user-supplied gene list.

All modes return indices on the ScoringContext gene axis, which is already
the intersection of reference and query genes.
"""

from __future__ import annotations

import itertools
import logging
from typing import Dict, FrozenSet, MutableMapping, Optional, Sequence, Tuple

import numpy as np

from .config import DEFAULT_SD_THRESHOLD, ClassificationParams
from .errors import ConfigurationError
from .reference import PairGenes
from .scoring import ScoringContext

GeneSetCache = MutableMapping[FrozenSet[str], np.ndarray]


def n_de_genes_per_pair(n_labels: int, base: int = 500, minimum: int = 10) -> int:
    """Number of genes taken per direction for each label pair.

    Decreases with the number of labels compared at once:
    ``max(minimum, round(base * (2/3) ** log2(n_labels)))``.
    """
    if n_labels < 2:
        return max(minimum, base)
    return max(minimum, int(round(base * (2.0 / 3.0) ** np.log2(n_labels))))


class GeneSetSelector:
    """Chooses the genes used for correlation.

    The "sd" set, the explicit set and the "de" set for the full label
    universe are materialized in the constructor so the selector can be
    shared read-only by every worker. Gene sets for narrower candidate sets
    go into a caller-owned cache.

    Parameters
    ----------
    context : ScoringContext
        Aligned reference data
    mode : str
        "sd", "de" or "explicit"
    sd_threshold : float, optional
        Standard deviation cutoff for "sd" mode
    genes : Sequence[str], optional
        Gene list for "explicit" mode
    precomputed_de : Dict[Tuple[str, str], List[str]], optional
        Pairwise gene lists supplied with the reference, ranked best first;
        each pair contributes its first n genes like a computed pair
    de_base_genes, de_min_genes : int
        Parameters of :func:`n_de_genes_per_pair`
    """

    def __init__(
        self,
        context: ScoringContext,
        mode: str = "de",
        sd_threshold: Optional[float] = None,
        genes: Optional[Sequence[str]] = None,
        precomputed_de: Optional[PairGenes] = None,
        de_base_genes: int = 500,
        de_min_genes: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        if mode not in ("sd", "de", "explicit"):
            raise ConfigurationError(f"Unknown gene selection mode '{mode}'")

        self.context = context
        self.mode = mode
        self.sd_threshold = DEFAULT_SD_THRESHOLD if sd_threshold is None else sd_threshold
        self.de_base_genes = de_base_genes
        self.de_min_genes = de_min_genes
        self.logger = logger or logging.getLogger(__name__)

        self._gene_pos = {g: i for i, g in enumerate(context.gene_names)}
        self._precomputed = self._index_precomputed(precomputed_de)
        self._label_means = self._compute_label_means()

        self._sd_genes: Optional[np.ndarray] = None
        self._explicit_genes: Optional[np.ndarray] = None
        if mode == "sd":
            self._sd_genes = self._select_sd()
        elif mode == "explicit":
            self._explicit_genes = self._select_explicit(genes or [])

        self._full_labels = frozenset(context.label_names)
        self._full_de: Optional[np.ndarray] = None
        if mode == "de":
            self._full_de = self._select_de(context.label_names)

    @classmethod
    def from_params(
        cls,
        context: ScoringContext,
        params: ClassificationParams,
        precomputed_de: Optional[PairGenes] = None,
        atlas_sd_thres: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "GeneSetSelector":
        """Build a selector from classification params."""
        sd_threshold = params.sd_threshold if params.sd_threshold is not None else atlas_sd_thres
        return cls(
            context,
            mode=params.gene_selection,
            sd_threshold=sd_threshold,
            genes=params.genes,
            precomputed_de=precomputed_de,
            de_base_genes=params.de_base_genes,
            de_min_genes=params.de_min_genes,
            logger=logger,
        )

    def select(
        self,
        candidates: Optional[Sequence[str]] = None,
        cache: Optional[GeneSetCache] = None,
    ) -> np.ndarray:
        """Gene indices for the coarse pass under the configured mode."""
        if self.mode == "sd":
            return self._sd_genes
        if self.mode == "explicit":
            return self._explicit_genes
        return self.select_de(candidates or self.context.label_names, cache)

    def select_for_finetune(
        self,
        candidates: Sequence[str],
        cache: Optional[GeneSetCache] = None,
    ) -> np.ndarray:
        """Gene indices for a fine-tuning round.

        Rounds use pairwise differential genes of the current candidates in
        "sd" and "de" modes; an explicit gene list is kept as given.
        """
        if self.mode == "explicit":
            return self._explicit_genes
        return self.select_de(candidates, cache)

    def select_de(
        self,
        candidates: Sequence[str],
        cache: Optional[GeneSetCache] = None,
    ) -> np.ndarray:
        """Union of pairwise differential genes among the candidates."""
        key = frozenset(candidates)
        if key == self._full_labels and self._full_de is not None:
            return self._full_de
        if cache is not None and key in cache:
            return cache[key]
        genes = self._select_de(sorted(key))
        if cache is not None:
            cache[key] = genes
        return genes

    def pair_genes(self, label_a: str, label_b: str, n: int) -> np.ndarray:
        """Genes separating two labels: top ``n`` up in each direction."""
        a = self.context.label_code(label_a)
        b = self.context.label_code(label_b)
        chosen = []
        for up, down in ((a, b), (b, a)):
            pre = self._precomputed.get((up, down))
            if pre is not None:
                chosen.append(pre[:n])
                continue
            diff = self._label_means[:, up] - self._label_means[:, down]
            order = np.argsort(-diff, kind="mergesort")
            chosen.append(order[:n])
        return np.unique(np.concatenate(chosen)).astype(np.int64)

    def _select_de(self, candidates: Sequence[str]) -> np.ndarray:
        labels = sorted(set(candidates))
        if len(labels) < 2 or self.context.n_genes == 0:
            return np.arange(self.context.n_genes, dtype=np.int64)

        n = n_de_genes_per_pair(len(labels), self.de_base_genes, self.de_min_genes)
        parts = [self.pair_genes(a, b, n) for a, b in itertools.combinations(labels, 2)]
        genes = np.unique(np.concatenate(parts)).astype(np.int64)
        self.logger.debug(
            "DE genes for %d labels: %d per pair direction -> %d genes",
            len(labels),
            n,
            genes.size,
        )
        return genes

    def _select_sd(self) -> np.ndarray:
        matrix = self.context.matrix
        if matrix.shape[1] < 2:
            self.logger.warning("sd selection needs >= 2 reference samples; no genes selected")
            return np.array([], dtype=np.int64)
        sds = matrix.std(axis=1, ddof=1)
        genes = np.flatnonzero(sds > self.sd_threshold).astype(np.int64)
        self.logger.info(
            "sd selection: %d of %d genes with sd > %.3f",
            genes.size,
            self.context.n_genes,
            self.sd_threshold,
        )
        return genes

    def _select_explicit(self, genes: Sequence[str]) -> np.ndarray:
        idx = sorted({self._gene_pos[g] for g in map(str, genes) if g in self._gene_pos})
        dropped = len(set(map(str, genes))) - len(idx)
        if dropped:
            self.logger.warning(
                "Explicit gene list: %d gene(s) not present in both reference and query",
                dropped,
            )
        self.logger.info("Explicit selection: %d genes", len(idx))
        return np.asarray(idx, dtype=np.int64)

    def _compute_label_means(self) -> np.ndarray:
        ctx = self.context
        means = np.zeros((ctx.n_genes, ctx.n_labels))
        for code in range(ctx.n_labels):
            means[:, code] = ctx.matrix[:, ctx.label_codes == code].mean(axis=1)
        return means

    def _index_precomputed(self, precomputed: Optional[PairGenes]) -> Dict[Tuple[int, int], np.ndarray]:
        if not precomputed:
            return {}
        code_of = {label: code for code, label in enumerate(self.context.label_names)}
        out: Dict[Tuple[int, int], np.ndarray] = {}
        for (a, b), genes in precomputed.items():
            if a not in code_of or b not in code_of:
                continue
            # Lists are ranked; keep their order so pair_genes can take the top n
            idx = dict.fromkeys(self._gene_pos[g] for g in genes if g in self._gene_pos)
            out[(code_of[a], code_of[b])] = np.fromiter(idx, dtype=np.int64, count=len(idx))
        self.logger.info("Using %d precomputed pairwise gene sets", len(out))
        return out
