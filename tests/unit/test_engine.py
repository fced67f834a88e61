"""Unit tests for the classification engine and parallel dispatch."""

import numpy as np
import pandas as pd
import pytest

from celltype_refmatch.core.classification import (
    ClassificationEngine,
    ClassificationParams,
    ClassifiedSample,
    ConfigurationError,
    ErrorKind,
    FailedSample,
    InvalidLabelMappingError,
    ReferenceAtlas,
    extract_work_items,
    run_classification_parallel,
)

EXPECTED_MIXED = ["A", "B", "C", "C", "B", "A"]

SMALL_GENES = [f"g{i}" for i in range(10)]


def _params(**overrides):
    base = {"worker_count": 1}
    base.update(overrides)
    return ClassificationParams(**base)


@pytest.fixture
def small_reference():
    """Labels A and B with two samples each, C with one, over ten genes."""
    data = pd.DataFrame(
        {
            "a1": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0],
            "a2": [1.2, 2.1, 2.9, 4.2, 5.1, 5.8, 7.1, 8.2, 8.9, 10.1],
            "b1": [10.0, 9.0, 8.0, 7.0, 6.0, 5.0, 4.0, 3.0, 2.0, 1.0],
            "b2": [10.1, 8.8, 8.1, 7.2, 5.9, 5.1, 3.8, 3.1, 2.2, 0.9],
            "c1": [5.0, 9.0, 2.0, 7.0, 1.0, 10.0, 3.0, 8.0, 4.0, 6.0],
        },
        index=SMALL_GENES,
    )
    return ReferenceAtlas(data=data, types=["A", "A", "B", "B", "C"])


@pytest.fixture
def perturbed_a():
    """One query sample: a small perturbation of reference sample a1."""
    values = [1.05, 1.95, 3.1, 3.9, 5.05, 6.1, 6.95, 8.05, 9.1, 9.9]
    return pd.DataFrame({"q1": values}, index=SMALL_GENES)


class TestClassificationEngine:
    """Tests for ClassificationEngine.run."""

    def test_classifies_mixed_query(self, reference, query_mixed):
        """Each sample gets the label it was drawn from, in query order."""
        batch = ClassificationEngine(reference, _params()).run(query_mixed)

        assert batch.sample_ids == list(query_mixed.columns)
        assert batch.labels().tolist() == EXPECTED_MIXED
        assert batch.n_failed == 0
        assert batch.label_names == ("A", "B", "C")

    def test_idempotent(self, reference_five, query_five):
        """Two runs with identical inputs give identical outputs."""
        engine = ClassificationEngine(reference_five, _params(fine_tune=False))
        first = engine.run(query_five)
        second = engine.run(query_five)

        pd.testing.assert_frame_equal(first.scores_frame(), second.scores_frame())
        pd.testing.assert_frame_equal(first.labels_frame(), second.labels_frame())
        assert len(first) == 3
        assert first.scores_frame().shape == (3, 5)

    def test_without_finetune_label_is_coarse_best(self, reference_five, query_five):
        """Without fine-tuning the label is the coarse argmax."""
        batch = ClassificationEngine(reference_five, _params(fine_tune=False)).run(query_five)
        for result in batch.succeeded:
            assert result.label == result.first_label
            assert result.trace == ()
            assert result.scores[result.label] == max(result.scores.values())

    def test_confidence_attached(self, reference_five, query_five):
        """Each result carries a runner-up gap and a p-value."""
        batch = ClassificationEngine(reference_five, _params()).run(query_five)
        for result in batch.succeeded:
            assert result.delta_next > 0
            assert 0.0 < result.p_value < 1.0

    def test_pvalues_disabled(self, reference_five, query_five):
        """compute_pvalues=False leaves p-values as NaN."""
        batch = ClassificationEngine(
            reference_five, _params(compute_pvalues=False)
        ).run(query_five)
        assert all(np.isnan(r.p_value) for r in batch.succeeded)

    def test_cluster_mode(self, reference):
        """Cells are averaged per cluster before scoring."""
        from tests.fixtures import create_mock_query

        query = create_mock_query(["A", "A", "B", "B"])
        clusters = pd.Series(
            {"cell_0": "k1", "cell_1": "k1", "cell_2": "k2", "cell_3": "k2"}
        )
        batch = ClassificationEngine(reference, _params(mode="cluster")).run(query, clusters)

        assert len(batch) == 2
        assert batch.sample_ids == ["k1", "k2"]
        assert batch.labels().tolist() == ["A", "B"]
        assert [r.n_cells for r in batch.results] == [2, 2]

    def test_cluster_mode_requires_clusters(self, reference, query_mixed):
        """Cluster mode without an assignment aborts."""
        engine = ClassificationEngine(reference, _params(mode="cluster"))
        with pytest.raises(ConfigurationError, match="cluster assignment"):
            engine.run(query_mixed)

    def test_order_preserved_in_parallel(self, reference, query_mixed):
        """Threaded batches of one sample come back in query order."""
        params = _params(worker_count=2, backend="threading", batch_size=1)
        batch = ClassificationEngine(reference, params).run(query_mixed)
        assert batch.sample_ids == list(query_mixed.columns)
        assert batch.labels().tolist() == EXPECTED_MIXED

    def test_failure_isolated(self, reference, query_mixed):
        """A sample with no usable genes fails alone."""
        query = query_mixed.copy()
        query["cell_2"] = np.nan
        batch = ClassificationEngine(reference, _params()).run(query)

        assert batch.n_failed == 1
        failed = batch.results[2]
        assert isinstance(failed, FailedSample)
        assert not failed.ok
        assert failed.error_kind == ErrorKind.INSUFFICIENT_GENE_OVERLAP
        assert all(isinstance(r, ClassifiedSample) for i, r in enumerate(batch.results) if i != 2)
        assert batch.labels().iloc[2] is None

    def test_invalid_params_abort(self, reference, query_mixed):
        """Invalid parameters raise before any sample is scored."""
        with pytest.raises(ConfigurationError):
            ClassificationEngine(reference, _params(quantile=2.0)).run(query_mixed)

    def test_invalid_mapping_abort(self, query_mixed):
        """A conflicting fine-to-main mapping aborts the run."""
        from tests.fixtures import create_mock_reference

        good = create_mock_reference()
        main = ["X"] * 12
        main[0] = "Y"
        atlas = ReferenceAtlas(data=good.data, types=good.types, main_types=main)
        with pytest.raises(InvalidLabelMappingError):
            ClassificationEngine(atlas, _params()).run(query_mixed)

    def test_main_types(self, reference_with_main, query_mixed):
        """The main taxonomy classifies into main labels."""
        batch = ClassificationEngine(reference_with_main, _params()).run(
            query_mixed, granularity="main-types"
        )
        assert batch.granularity == "main-types"
        assert batch.label_names == ("Epithelium", "Immune")
        assert batch.labels().tolist() == [
            "Epithelium", "Epithelium", "Immune", "Immune", "Epithelium", "Epithelium",
        ]

    def test_main_types_missing(self, reference, query_mixed):
        """Main granularity needs main labels on the reference."""
        engine = ClassificationEngine(reference, _params(granularity="main-types"))
        with pytest.raises(ConfigurationError, match="main_types"):
            engine.run(query_mixed)

    def test_run_all(self, reference_with_main, query_mixed, tmp_output_dir):
        """Both taxonomies are run and written with distinct prefixes."""
        batches = ClassificationEngine(reference_with_main, _params()).run_all(
            query_mixed, output_dir=tmp_output_dir
        )
        assert set(batches) == {"all-types", "main-types"}
        assert (tmp_output_dir / "labels.csv").exists()
        assert (tmp_output_dir / "main_labels.csv").exists()

    def test_run_all_without_main(self, reference, query_mixed):
        """Without main labels only the fine taxonomy is run."""
        batches = ClassificationEngine(reference, _params()).run_all(query_mixed)
        assert list(batches) == ["all-types"]

    def test_write_outputs(self, reference, query_mixed, tmp_output_dir):
        """Score, label, error and trace tables are written."""
        batch = ClassificationEngine(reference, _params()).run(
            query_mixed, output_dir=tmp_output_dir
        )
        for name in ("scores", "labels", "errors", "finetune_trace"):
            assert (tmp_output_dir / f"{name}.csv").exists()

        scores = pd.read_csv(tmp_output_dir / "scores.csv", index_col=0)
        assert list(scores.index) == batch.sample_ids
        assert list(scores.columns) == ["A", "B", "C"]
        labels = pd.read_csv(tmp_output_dir / "labels.csv")
        assert labels["label"].tolist() == EXPECTED_MIXED

    def test_validate_input(self, reference, query_mixed):
        """validate_input reports problems without raising."""
        engine = ClassificationEngine(reference, _params(mode="cluster"))
        errors = engine.validate_input(query_mixed)
        assert any("cluster assignment" in e for e in errors)

        unrelated = pd.DataFrame({"q": [1.0, 2.0]}, index=["X1", "X2"])
        errors = ClassificationEngine(reference, _params()).validate_input(unrelated)
        assert any("genes shared" in e for e in errors)

    def test_summary(self, reference, query_mixed):
        """Summary counts labels and failures."""
        batch = ClassificationEngine(reference, _params()).run(query_mixed)
        summary = batch.summary()
        assert summary["n_samples"] == 6
        assert summary["n_failed"] == 0
        assert summary["label_counts"] == {"A": 2, "B": 2, "C": 2}

    def test_cap_warning_in_labels_frame(self, reference_five, query_five):
        """Samples stopped at the round cap carry the cap code as a warning."""
        params = _params(max_finetune_rounds=1, fine_tune_threshold=2.0)
        batch = ClassificationEngine(reference_five, params).run(query_five)
        labels = batch.labels_frame()

        assert labels["iteration_cap_exceeded"].tolist() == [True, True, True]
        assert labels["warning"].tolist() == [ErrorKind.ITERATION_CAP_EXCEEDED.value] * 3
        assert labels["error_kind"].isna().all()
        assert batch.summary()["n_iteration_cap_exceeded"] == 3

    def test_no_warning_without_cap(self, reference_five, query_five):
        """Uncapped samples have no warning."""
        labels = ClassificationEngine(reference_five, _params()).run(query_five).labels_frame()
        assert labels["warning"].isna().all()


class TestSmallReference:
    """Tests on a hand-built reference with uneven sample counts."""

    @pytest.mark.parametrize("gene_selection", ["de", "sd"])
    def test_perturbed_sample_classified(self, small_reference, perturbed_a, gene_selection):
        """A perturbed A sample scores highest for A and settles within two rounds."""
        params = _params(gene_selection=gene_selection, quantile=0.8, fine_tune_threshold=0.05)
        batch = ClassificationEngine(small_reference, params).run(perturbed_a)

        result = batch.results[0]
        assert isinstance(result, ClassifiedSample)
        assert result.first_label == "A"
        assert max(result.scores, key=result.scores.get) == "A"
        assert result.scores["A"] > 0.9
        assert result.label == "A"
        assert result.n_rounds <= 2
        assert not result.iteration_cap_exceeded

    def test_single_sample_label_scores_its_coefficient(self, small_reference, perturbed_a):
        """A label with one sample scores that sample's coefficient at any quantile."""
        scores = [
            ClassificationEngine(small_reference, _params(quantile=q, fine_tune=False))
            .run(perturbed_a).results[0].scores["C"]
            for q in (0.2, 0.8)
        ]
        assert scores[0] == pytest.approx(scores[1])

    @pytest.mark.parametrize("gene_selection", ["sd", "de"])
    def test_one_sample_per_label(self, query_mixed, gene_selection):
        """References with a single sample per label classify correctly."""
        from tests.fixtures import create_mock_reference

        atlas = create_mock_reference(n_per_label=1)
        batch = ClassificationEngine(atlas, _params(gene_selection=gene_selection)).run(query_mixed)

        assert batch.n_failed == 0
        assert batch.labels().tolist() == EXPECTED_MIXED


class TestParallelDispatch:
    """Tests for run_classification_parallel."""

    def test_empty(self, reference):
        """No items gives no results."""
        engine = ClassificationEngine(reference, _params())
        _, state = engine.build_state(reference.genes, "all-types")
        assert run_classification_parallel([], state) == []

    def test_sequential_matches_threaded(self, reference, query_mixed):
        """Worker count does not change results."""
        engine = ClassificationEngine(reference, _params())
        context, state = engine.build_state(query_mixed.index, "all-types")
        items = extract_work_items(context.align_query(query_mixed), list(query_mixed.columns))

        sequential = run_classification_parallel(items, state, n_workers=1)
        threaded = run_classification_parallel(
            items, state, n_workers=3, backend="threading", batch_size=2
        )
        assert [r.label for r in sequential] == [r.label for r in threaded]
        assert [r.scores for r in sequential] == [r.scores for r in threaded]
