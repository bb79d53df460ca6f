"""Tests for atacsplit.core.refine.

Tests cover:
- Ensemble size and the random forest backend
- Classifier calls at the probability cutoff
- Merging calls with the size split, including demotion of free-size
  fragments that were not called free
- Fragment name checks
"""

import numpy as np
import pytest

from atacsplit.config import BinningConfig, RefineConfig
from atacsplit.core.features import FeatureMatrix
from atacsplit.core.refine import (
    FragmentRefiner,
    RandomForestBackend,
    adjacent_label,
    check_fragment_names,
    tree_count,
)
from atacsplit.errors import ConfigurationError, DataConsistencyError
from atacsplit.utils.intervals import GenomicInterval


def matrix(rows) -> FeatureMatrix:
    values = np.asarray(rows, dtype=float).reshape(-1, 3)
    return FeatureMatrix(np.arange(len(values)), values)


# name, template length, P(free), P(nucleosome)
SCENARIO = [
    ("a", 80, 0.9, 0.1),
    ("b", 90, 0.1, 0.9),
    ("c", 200, 0.1, 0.9),
    ("d", 300, 0.5, 0.5),
    ("e", 250, 0.85, 0.85),
    ("f", 120, 0.95, 0.0),
    ("g", 95, 0.5, 0.5),
]


@pytest.fixture
def scenario(make_record, make_classifier):
    """Records a..g with fixed classifier probabilities and h left unscored."""
    records = [
        make_record(name, 1000 * i, template_length=tlen)
        for i, (name, tlen, _, _) in enumerate(SCENARIO)
    ]
    records.append(make_record("h", 0, seqid="chr2", template_length=150))
    intervals = [
        GenomicInterval("chr1", r.reference_start, r.reference_start + abs(r.template_length), name=r.name)
        for r in records[:-1]
    ]
    classifier = make_classifier(
        probabilities=([s[2] for s in SCENARIO], [s[3] for s in SCENARIO])
    )
    return records, intervals, classifier


def names(bins, label):
    return {r.name for r in bins[label]}


class TestTreeCount:
    """Tests for the ensemble size rule."""

    @pytest.mark.parametrize(
        "n_rows,expected",
        [(1, 2), (2, 4), (4, 4), (5, 6), (100, 20), (101, 22)],
    )
    def test_tree_count(self, n_rows: int, expected: int) -> None:
        """Test 2 * ceil(sqrt(n))."""
        assert tree_count(n_rows) == expected


class TestRandomForestBackend:
    """Tests for the scikit-learn backend."""

    def test_separable(self) -> None:
        """Test well-separated classes are predicted with high probability."""
        rng = np.random.default_rng(0)
        free = np.column_stack(
            [rng.normal(60, 5, 50), rng.uniform(0.6, 1, 50), rng.uniform(0.5, 0.7, 50)]
        )
        nuc = np.column_stack(
            [rng.normal(200, 5, 50), rng.uniform(0, 0.3, 50), rng.uniform(0.3, 0.5, 50)]
        )
        x = np.vstack([free, nuc])
        y = np.array(["f"] * 50 + ["n"] * 50)
        backend = RandomForestBackend(random_state=1)

        model = backend.train(x, y, tree_count(len(y)))
        p_free, p_nuc = backend.predict_proba(model, np.array([[55, 0.9, 0.6], [210, 0.1, 0.4]]))

        assert p_free[0] > 0.8
        assert p_nuc[1] > 0.8
        assert p_free + p_nuc == pytest.approx([1.0, 1.0])

    def test_single_class(self) -> None:
        """Test a missing class gets probability zero."""
        backend = RandomForestBackend()
        model = backend.train(np.ones((3, 3)), np.array(["f", "f", "f"]), 2)
        p_free, p_nuc = backend.predict_proba(model, np.ones((2, 3)))
        assert p_free.tolist() == [1.0, 1.0]
        assert p_nuc.tolist() == [0.0, 0.0]


class TestRefine:
    """Tests for refining the size split with classifier calls."""

    def test_scenario(self, scenario) -> None:
        """Test every fragment lands in the expected category."""
        records, intervals, classifier = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(cutoff=0.8), classifier)

        bins = refiner.refine(
            records, intervals, matrix(np.zeros((7, 3))), matrix([[1, 1, 1]]), matrix([[2, 2, 2]])
        )

        assert names(bins, "NucleosomeFree") == {"a", "f"}
        assert names(bins, "inter1") == {"b", "g", "h"}
        assert names(bins, "mononucleosome") == {"c"}
        assert names(bins, "inter2") == {"d", "e"}
        assert all(not bins[label] for label in ("dinucleosome", "inter3", "trinucleosome", "others"))

    def test_training_labels(self, scenario) -> None:
        """Test the classifier is trained on free rows then nucleosome rows."""
        records, intervals, classifier = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(), classifier)

        refiner.refine(
            records,
            intervals,
            matrix(np.zeros((7, 3))),
            matrix([[1, 1, 1], [1, 1, 1]]),
            matrix([[2, 2, 2]]),
        )

        x, y, n_trees = classifier.trained_with
        assert y.tolist() == ["f", "f", "n"]
        assert x[:, 0].tolist() == [1, 1, 2]
        assert n_trees == 4

    def test_partition(self, scenario) -> None:
        """Test every in-range record appears in exactly one category."""
        records, intervals, classifier = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(), classifier)

        bins = refiner.refine(
            records, intervals, matrix(np.zeros((7, 3))), matrix([[1, 1, 1]]), matrix([[2, 2, 2]])
        )

        combined = [r for v in bins.values() for r in v]
        assert sorted(r.name for r in combined) == sorted(r.name for r in records)

    def test_free_and_nucleosome_disjoint(self, scenario) -> None:
        """Test a name called nucleosome on one interval is never free."""
        records, intervals, _ = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(cutoff=0.8))
        iv_a = intervals[0]
        free, nucleosome = refiner.call_names(
            [iv_a, iv_a._replace(seqid="chr2")],
            np.array([0.9, 0.1]),
            np.array([0.1, 0.9]),
        )
        assert free == set()
        assert nucleosome == {"a"}

    def test_cutoff_inclusive(self, scenario) -> None:
        """Test a probability equal to the cutoff counts as a call."""
        _, intervals, _ = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(cutoff=0.5))
        free, nucleosome = refiner.call_names(intervals[:1], np.array([0.5]), np.array([0.4]))
        assert free == {"a"}
        assert nucleosome == set()

    def test_feature_row_mismatch(self, scenario) -> None:
        """Test test features must be row-aligned with the intervals."""
        records, intervals, classifier = scenario
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(), classifier)
        with pytest.raises(DataConsistencyError):
            refiner.refine(
                records, intervals, matrix(np.zeros((6, 3))), matrix([[1, 1, 1]]), matrix([[2, 2, 2]])
            )

    def test_probability_count_mismatch(self, scenario, make_classifier) -> None:
        """Test a classifier returning the wrong number of probabilities."""
        records, intervals, _ = scenario
        classifier = make_classifier(probabilities=([0.5], [0.5]))
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(), classifier)
        with pytest.raises(DataConsistencyError, match="probabilities"):
            refiner.refine(
                records, intervals, matrix(np.zeros((7, 3))), matrix([[1, 1, 1]]), matrix([[2, 2, 2]])
            )


class TestMerge:
    """Tests for combining calls with the size split."""

    def test_demotion_to_previous_label(self, make_record) -> None:
        """Test demotion goes to the previous label when free is last."""
        scheme = BinningConfig(
            breaks=(0, 150, 1000),
            labels=("long_low", "free"),
            nucleosome_free_label="free",
            mononucleosome_label="long_low",
        )
        unresolved = [make_record("u", 0, template_length=300)]
        refiner = FragmentRefiner(scheme, RefineConfig(), backend=object())

        bins = refiner.merge([], [], unresolved)

        assert names(bins, "long_low") == {"u"}
        assert bins["free"] == []

    def test_free_calls_keep_any_size(self, make_record) -> None:
        """Test records called free go to the free label even when large."""
        refiner = FragmentRefiner(BinningConfig(), RefineConfig(), backend=object())
        bins = refiner.merge([make_record("x", 0, template_length=500)], [], [])
        assert names(bins, "NucleosomeFree") == {"x"}
        assert bins["dinucleosome"] == []


class TestFragmentNames:
    """Tests for fragment name checks."""

    def test_adjacent_label(self) -> None:
        """Test the label after the free label is used by default."""
        assert adjacent_label(BinningConfig()) == "inter1"

    def test_pairs_allowed(self, make_pair) -> None:
        """Test two records per name pass."""
        check_fragment_names(make_pair("p", 0, 100))

    def test_three_records_rejected(self, make_record) -> None:
        """Test more than two records per name are rejected."""
        records = [make_record("dup", i * 10) for i in range(3)]
        with pytest.raises(ConfigurationError, match="more than 2"):
            check_fragment_names(records)

    def test_empty_name_rejected(self, make_record) -> None:
        """Test records need a name."""
        with pytest.raises(ConfigurationError, match="name"):
            check_fragment_names([make_record("", 0)])
