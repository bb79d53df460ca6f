"""Classifier-based refinement of the size split.

A binary classifier is trained on nucleosome-free ("f") and
mononucleosome ("n") training regions and scores one test interval per
fragment. Fragments are then reassigned:

- nucleosome if P(n) >= cutoff
- nucleosome free if P(f) >= cutoff and P(n) < cutoff
- unresolved otherwise

The NucleosomeFree bin holds exactly the fragments called free. Fragments
called nucleosome and unresolved fragments are split by size; any of them
whose size falls in the NucleosomeFree range go to the neighbouring label.

Example:
    >>> refiner = FragmentRefiner(BinningConfig(), RefineConfig(cutoff=0.8))
    >>> bins = refiner.refine(records, test_intervals, x_test, x_free, x_nuc)
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Any, Protocol, Sequence

import numpy as np
from sklearn.ensemble import RandomForestClassifier

from atacsplit.config import BinningConfig, RefineConfig
from atacsplit.core.binning import split_by_size
from atacsplit.core.features import FeatureMatrix
from atacsplit.errors import ConfigurationError, DataConsistencyError
from atacsplit.io.bam import AlignmentRecord
from atacsplit.utils.intervals import GenomicInterval

logger = logging.getLogger(__name__)

LABEL_FREE = "f"
LABEL_NUCLEOSOME = "n"

MAX_RECORDS_PER_NAME = 2


# =============================================================================
# Classifier Backends
# =============================================================================


class ClassifierBackend(Protocol):
    """Trainable binary classifier over labels "f" and "n"."""

    def train(self, features: np.ndarray, labels: np.ndarray, n_trees: int) -> Any: ...

    def predict_proba(
        self, model: Any, features: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]: ...


def tree_count(n_rows: int) -> int:
    """Ensemble size for ``n_rows`` training rows."""
    return 2 * math.ceil(math.sqrt(n_rows))


class RandomForestBackend:
    """scikit-learn random forest classifier.

    Attributes:
        random_state: Seed passed to the forest.
        n_jobs: Parallel jobs used by scikit-learn.
    """

    def __init__(self, random_state: int | None = 0, n_jobs: int | None = None) -> None:
        self.random_state = random_state
        self.n_jobs = n_jobs

    def train(
        self, features: np.ndarray, labels: np.ndarray, n_trees: int
    ) -> RandomForestClassifier:
        model = RandomForestClassifier(
            n_estimators=n_trees,
            random_state=self.random_state,
            n_jobs=self.n_jobs,
        )
        model.fit(features, labels)
        return model

    def predict_proba(
        self, model: RandomForestClassifier, features: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return P(free) and P(nucleosome) for every row."""
        proba = model.predict_proba(features)
        classes = list(model.classes_)
        zeros = np.zeros(len(features))
        p_free = proba[:, classes.index(LABEL_FREE)] if LABEL_FREE in classes else zeros
        p_nuc = (
            proba[:, classes.index(LABEL_NUCLEOSOME)] if LABEL_NUCLEOSOME in classes else zeros
        )
        return p_free, p_nuc


# =============================================================================
# Refinement
# =============================================================================


def check_fragment_names(records: Sequence[AlignmentRecord]) -> None:
    """Require a non-empty name and at most two mates per fragment name.

    Raises:
        ConfigurationError: If a name is empty or shared by more than two records.
    """
    counts = Counter(r.name for r in records)
    if counts.get("", 0) or counts.get(None, 0):
        raise ConfigurationError("Every alignment record needs a fragment name")
    duplicated = [name for name, n in counts.items() if n > MAX_RECORDS_PER_NAME]
    if duplicated:
        raise ConfigurationError(
            f"{len(duplicated)} fragment names are used by more than "
            f"{MAX_RECORDS_PER_NAME} records, e.g. {duplicated[0]}"
        )


def adjacent_label(scheme: BinningConfig) -> str:
    """Label receiving non-free fragments of nucleosome-free size."""
    labels = list(scheme.labels)
    i = labels.index(scheme.nucleosome_free_label)
    return labels[i + 1] if i + 1 < len(labels) else labels[i - 1]


class FragmentRefiner:
    """Reassign fragments using classifier calls on their test intervals.

    Attributes:
        scheme: Size bins.
        config: Cutoff and random seed.
        backend: Classifier implementation.
    """

    def __init__(
        self,
        scheme: BinningConfig,
        config: RefineConfig | None = None,
        backend: ClassifierBackend | None = None,
    ) -> None:
        self.scheme = scheme
        self.config = config or RefineConfig()
        self.backend = backend or RandomForestBackend(random_state=self.config.random_state)

    def predict(
        self,
        test_features: FeatureMatrix,
        free_features: FeatureMatrix,
        nucleosome_features: FeatureMatrix,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Train on both classes and return P(free), P(nucleosome) per test row."""
        x = np.vstack([free_features.values, nucleosome_features.values])
        y = np.array(
            [LABEL_FREE] * len(free_features) + [LABEL_NUCLEOSOME] * len(nucleosome_features)
        )
        n_trees = tree_count(len(y))
        logger.info(f"Training classifier on {len(y):,} regions ({n_trees} trees)")

        model = self.backend.train(x, y, n_trees)
        del x, y
        p_free, p_nuc = self.backend.predict_proba(model, test_features.values)
        del model

        if len(p_free) != len(test_features) or len(p_nuc) != len(test_features):
            raise DataConsistencyError(
                f"Classifier returned {len(p_free)} probabilities for {len(test_features)} rows"
            )
        return np.asarray(p_free), np.asarray(p_nuc)

    def call_names(
        self,
        test_intervals: list[GenomicInterval],
        p_free: np.ndarray,
        p_nuc: np.ndarray,
    ) -> tuple[set[str], set[str]]:
        """Fragment names called free and nucleosome.

        A name called nucleosome on any interval is not called free.
        """
        cutoff = self.config.cutoff
        nucleosome = {iv.name for iv, p in zip(test_intervals, p_nuc) if p >= cutoff}
        free = {
            iv.name
            for iv, pf, pn in zip(test_intervals, p_free, p_nuc)
            if pf >= cutoff and pn < cutoff
        }
        return free - nucleosome, nucleosome

    def refine(
        self,
        records: Sequence[AlignmentRecord],
        test_intervals: list[GenomicInterval],
        test_features: FeatureMatrix,
        free_features: FeatureMatrix,
        nucleosome_features: FeatureMatrix,
    ) -> dict[str, list[AlignmentRecord]]:
        """Refine the size split of ``records``.

        Args:
            records: All records to split.
            test_intervals: One named interval per fragment and sequence.
            test_features: Features of ``test_intervals``, row-aligned.
            free_features: Features of nucleosome-free training regions.
            nucleosome_features: Features of mononucleosome training regions.

        Returns:
            Mapping from every label to its records. Each record appears in
            at most one bin (none if its size is outside every bin and it
            was not called free).

        Raises:
            ConfigurationError: If fragment names are empty or repeated.
            DataConsistencyError: If features and intervals disagree.
        """
        check_fragment_names(records)
        if len(test_intervals) != len(test_features):
            raise DataConsistencyError(
                f"{len(test_features)} feature rows for {len(test_intervals)} test intervals"
            )

        p_free, p_nuc = self.predict(test_features, free_features, nucleosome_features)
        free_names, nucleosome_names = self.call_names(test_intervals, p_free, p_nuc)
        del p_free, p_nuc

        free: list[AlignmentRecord] = []
        nucleosome: list[AlignmentRecord] = []
        unresolved: list[AlignmentRecord] = []
        for r in records:
            if r.name in nucleosome_names:
                nucleosome.append(r)
            elif r.name in free_names:
                free.append(r)
            else:
                unresolved.append(r)
        logger.info(
            f"Classifier calls: {len(free):,} free, {len(nucleosome):,} nucleosome, "
            f"{len(unresolved):,} unresolved records"
        )

        return self.merge(free, nucleosome, unresolved)

    def merge(
        self,
        free: list[AlignmentRecord],
        nucleosome: list[AlignmentRecord],
        unresolved: list[AlignmentRecord],
    ) -> dict[str, list[AlignmentRecord]]:
        """Combine classifier calls with the size split of the remaining records."""
        nf_label = self.scheme.nucleosome_free_label
        nucleosome_bins = split_by_size(nucleosome, self.scheme, log_level=logging.DEBUG)
        unresolved_bins = split_by_size(unresolved, self.scheme, log_level=logging.DEBUG)

        bins = {
            label: nucleosome_bins[label] + unresolved_bins[label] for label in self.scheme.labels
        }
        # NucleosomeFree holds only records called free. Records of that size
        # called nucleosome or left unresolved go to the adjacent label, so it
        # can hold records shorter than its own bracket.
        demoted = bins[nf_label]
        if demoted:
            target = adjacent_label(self.scheme)
            bins[target] = demoted + bins[target]
            logger.debug(f"{len(demoted):,} non-free records of free size moved to {target}")
        bins[nf_label] = free

        logger.info(
            "Refined split: " + ", ".join(f"{k}={len(v):,}" for k, v in bins.items())
        )
        return bins
