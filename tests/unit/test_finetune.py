"""Unit tests for fine-tuning."""

import numpy as np

from celltype_refmatch.core.classification import (
    CorrelationScorer,
    FineTuner,
    GeneSetSelector,
    ScoringContext,
    best_label,
    drop_lowest,
    margin_cut,
)


def _tuner(atlas, query, threshold=0.05, max_rounds=None):
    context = ScoringContext.build(atlas, query.index, "all-types")
    scorer = CorrelationScorer(context)
    selector = GeneSetSelector(context, mode="de")
    tuner = FineTuner(scorer, selector, threshold=threshold, max_rounds=max_rounds)
    values = context.align_query(query)[:, 0]
    coarse = scorer.score_all(values, selector.select())
    return tuner, values, coarse


class TestEliminationRules:
    """Tests for the per-round elimination helpers."""

    def test_best_label_tie_goes_to_first(self):
        """Equal best scores resolve to the lexicographically first label."""
        assert best_label({"B": 0.5, "A": 0.5, "C": 0.1}) == "A"

    def test_margin_cut(self):
        """Labels within the margin of the best are kept."""
        scores = {"A": 0.90, "B": 0.87, "C": 0.80}
        assert margin_cut(scores, 0.05) == ["A", "B"]
        assert margin_cut(scores, 0.0) == ["A"]

    def test_drop_lowest_tie_drops_last(self):
        """Among tied lowest labels the lexicographically last is dropped."""
        scores = {"A": 0.5, "B": 0.2, "C": 0.2}
        assert drop_lowest(scores, ["A", "B", "C"]) == ["A", "B"]


class TestFineTuner:
    """Tests for FineTuner.run."""

    def test_converges_to_matching_label(self, reference, query_a):
        """A clear winner is returned within two rounds."""
        tuner, values, coarse = _tuner(reference, query_a)
        outcome = tuner.run(values, coarse)
        assert outcome.label == "A"
        assert len(outcome.trace) <= 2
        assert not outcome.iteration_cap_exceeded

    def test_single_label_universe(self, reference, query_a):
        """One candidate is returned without any round."""
        tuner, values, _ = _tuner(reference, query_a)
        outcome = tuner.run(values, {"B": 0.3})
        assert outcome.label == "B"
        assert outcome.trace == []

    def test_candidates_shrink_each_round(self, reference_five, query_five):
        """With a wide margin one label is dropped per round until two remain."""
        tuner, values, coarse = _tuner(reference_five, query_five, threshold=2.0)
        outcome = tuner.run(values, coarse)

        sizes = [len(step.candidates) for step in outcome.trace]
        assert sizes == [4, 3, 2]
        assert all(a > b for a, b in zip(sizes, sizes[1:]))
        for previous, current in zip(outcome.trace, outcome.trace[1:]):
            assert set(current.candidates) < set(previous.candidates)
        assert outcome.label == "A"

    def test_label_within_candidates(self, reference_five, query_five):
        """The final label is one of the last round's candidates."""
        tuner, values, coarse = _tuner(reference_five, query_five, threshold=2.0)
        outcome = tuner.run(values, coarse)
        assert outcome.label in outcome.trace[-1].candidates
        assert set(outcome.trace[0].candidates) <= set(coarse)

    def test_round_cap(self, reference_five, query_five):
        """Hitting the cap returns the current best with the flag set."""
        tuner, values, coarse = _tuner(reference_five, query_five, threshold=2.0, max_rounds=1)
        outcome = tuner.run(values, coarse)
        assert outcome.iteration_cap_exceeded
        assert len(outcome.trace) == 1
        assert outcome.label == "A"

    def test_trace_records_genes(self, reference_five, query_five):
        """Each round records how many genes were correlated."""
        tuner, values, coarse = _tuner(reference_five, query_five, threshold=2.0)
        outcome = tuner.run(values, coarse)
        assert all(step.n_genes > 0 for step in outcome.trace)
        assert [step.round for step in outcome.trace] == [1, 2, 3]

    def test_deterministic(self, reference_five, query_five):
        """Repeated runs give identical traces."""
        tuner, values, coarse = _tuner(reference_five, query_five, threshold=2.0)
        first = tuner.run(values, coarse)
        second = tuner.run(values, coarse)
        assert first.label == second.label
        assert [s.to_dict() for s in first.trace] == [s.to_dict() for s in second.trace]
        assert np.isfinite(first.trace[-1].scores[first.label])

    def test_default_cap_never_hit_while_shrinking(self):
        """A run dropping one label per round is not capped at any label count."""
        from tests.fixtures import create_mock_query, create_mock_reference

        labels = [f"L{i:02d}" for i in range(60)]
        atlas = create_mock_reference(labels=labels, n_per_label=1, n_genes=30)
        query = create_mock_query(["L00"], all_labels=labels, n_genes=30)
        tuner, values, coarse = _tuner(atlas, query, threshold=2.0)
        outcome = tuner.run(values, coarse)

        assert not outcome.iteration_cap_exceeded
        assert len(outcome.trace) == 58
        assert len(outcome.trace[-1].candidates) == 2
        assert outcome.label == "L00"
