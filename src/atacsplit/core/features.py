"""Feature extraction for fragment classification.

Every training or test interval is described by three features:

- fragment length: median width of the overlapping fragments (training
  regions) or the width of the fragment itself (test intervals)
- conservation: per-interval summary of per-base conservation scores
- GC fraction: (C + G) / width of the interval's reference sequence

Each feature is computed independently as a FeatureColumn keyed by the
position of the interval in its list. build_feature_matrix joins the
columns on that key and fails if any column is missing or reorders rows.

Example:
    >>> from atacsplit.core.features import FeatureExtractor
    >>> extractor = FeatureExtractor(genome, conservation)
    >>> x_free = extractor.training_features(training.free, nf_fragments)
    >>> x_free.values.shape
    (8731, 3)
"""

from __future__ import annotations

import logging
from typing import Iterator, NamedTuple, Protocol, Sequence

import numpy as np

from atacsplit.config import FeatureConfig
from atacsplit.errors import DataConsistencyError, ProviderContractError
from atacsplit.io.bam import AlignmentRecord
from atacsplit.utils.intervals import GenomicInterval, find_overlaps, trim

logger = logging.getLogger(__name__)

FEATURE_NAMES = ("fragment_length", "conservation", "gc")


# =============================================================================
# Collaborator Protocols
# =============================================================================


class SequenceProvider(Protocol):
    """Returns reference sequences for intervals, in input order."""

    seqlengths: dict[str, int]

    def get_sequences(self, intervals: list[GenomicInterval]) -> list[str]: ...


class ConservationProvider(Protocol):
    """Returns the query intervals with ``score`` set to a conservation summary."""

    def scores(
        self,
        intervals: list[GenomicInterval],
        summary_fun: str = "mean",
        population: str | None = None,
    ) -> list[GenomicInterval]: ...


# =============================================================================
# Data Structures
# =============================================================================


class FeatureColumn(NamedTuple):
    """One feature over a list of intervals.

    Attributes:
        keys: Position of each value's interval in the interval list.
        values: Feature values.
    """

    keys: np.ndarray
    values: np.ndarray


class FeatureMatrix(NamedTuple):
    """Joined features, one row per interval in key order.

    Attributes:
        keys: Row keys (0..n-1).
        values: Array of shape (n, 3), columns as in FEATURE_NAMES.
    """

    keys: np.ndarray
    values: np.ndarray

    def __len__(self) -> int:
        return len(self.keys)


def _dense(values: np.ndarray) -> FeatureColumn:
    return FeatureColumn(np.arange(len(values)), np.asarray(values, dtype=float))


def iter_chunks(items: Sequence, chunk_size: int) -> Iterator[Sequence]:
    """Consecutive slices of at most ``chunk_size`` items."""
    for lo in range(0, len(items), chunk_size):
        yield items[lo : lo + chunk_size]


# =============================================================================
# Feature Functions
# =============================================================================


def gc_fraction(
    intervals: list[GenomicInterval],
    genome: SequenceProvider,
    chunk_size: int,
) -> FeatureColumn:
    """(C + G) / width of each interval's sequence.

    Ambiguous bases count towards the width. Empty intervals give 0.
    """
    values = np.zeros(len(intervals))
    pos = 0
    for chunk in iter_chunks(intervals, chunk_size):
        sequences = genome.get_sequences(list(chunk))
        if len(sequences) != len(chunk):
            raise ProviderContractError(
                f"Sequence provider returned {len(sequences)} sequences for {len(chunk)} intervals"
            )
        for seq in sequences:
            if seq:
                seq = seq.upper()
                values[pos] = (seq.count("C") + seq.count("G")) / len(seq)
            pos += 1
    return _dense(values)


def conservation_scores(
    intervals: list[GenomicInterval],
    provider: ConservationProvider,
    chunk_size: int,
    summary_fun: str = "mean",
    population: str | None = None,
) -> FeatureColumn:
    """Conservation summary of each interval, missing values set to 0.

    The provider is called once per chunk and the results are concatenated
    in chunk order.

    Raises:
        ProviderContractError: If the provider returns a different number
            of intervals or different coordinates than it was given.
    """
    scored: list[GenomicInterval] = []
    for chunk in iter_chunks(intervals, chunk_size):
        scored.extend(provider.scores(list(chunk), summary_fun=summary_fun, population=population))

    if len(scored) != len(intervals):
        raise ProviderContractError(
            f"Conservation provider returned {len(scored)} intervals for {len(intervals)}"
        )
    for i, (query, result) in enumerate(zip(intervals, scored)):
        if query.coords != result.coords:
            raise ProviderContractError(
                f"Conservation provider changed interval {i}: {query.coords} -> {result.coords}"
            )

    values = np.array(
        [np.nan if s.score is None else s.score for s in scored], dtype=float
    )
    return _dense(np.nan_to_num(values, nan=0.0))


def median_fragment_length(
    regions: list[GenomicInterval],
    fragments: list[GenomicInterval],
) -> FeatureColumn:
    """Median width of the fragments overlapping each region.

    Raises:
        DataConsistencyError: If a region overlaps no fragment.
    """
    hits = find_overlaps(regions, fragments)
    if len(hits) != len(regions):
        missing = [i for i in range(len(regions)) if i not in hits]
        raise DataConsistencyError(
            f"{len(missing)} of {len(regions)} training regions overlap no fragment, "
            f"e.g. {regions[missing[0]].coords}"
        )
    widths = np.array([f.width for f in fragments])
    keys = np.array(sorted(hits))
    values = np.array([np.median(widths[hits[k]]) for k in keys], dtype=float)
    return FeatureColumn(keys, values)


def fragment_intervals(
    records: Sequence[AlignmentRecord],
    seqlengths: dict[str, int],
) -> list[GenomicInterval]:
    """One interval per fragment name and sequence, covering all its mates.

    Intervals are unstranded, named after the fragment, in order of first
    appearance and trimmed to the sequence lengths.
    """
    spans: dict[tuple[str, str], list[int]] = {}
    for r in records:
        key = (r.name, r.reference_name)
        span = spans.get(key)
        if span is None:
            spans[key] = [r.reference_start, r.reference_end]
        else:
            span[0] = min(span[0], r.reference_start)
            span[1] = max(span[1], r.reference_end)

    intervals = [
        GenomicInterval(seqid, start, end, "*", name=name)
        for (name, seqid), (start, end) in spans.items()
    ]
    return trim(intervals, seqlengths)


def build_feature_matrix(
    n_rows: int,
    frag_len: FeatureColumn,
    conservation: FeatureColumn,
    gc: FeatureColumn,
) -> FeatureMatrix:
    """Join the three feature columns on their row keys.

    Raises:
        DataConsistencyError: If a column does not have exactly one value
            per row key 0..n_rows-1.
    """
    keys = np.arange(n_rows)
    values = np.empty((n_rows, len(FEATURE_NAMES)))
    for j, (name, column) in enumerate(zip(FEATURE_NAMES, (frag_len, conservation, gc))):
        if len(column.keys) != n_rows or len(column.values) != n_rows:
            raise DataConsistencyError(
                f"Feature '{name}' has {len(column.keys)} rows for {n_rows} intervals"
            )
        order = np.argsort(column.keys, kind="stable")
        if not np.array_equal(np.asarray(column.keys)[order], keys):
            raise DataConsistencyError(f"Feature '{name}' row keys do not match the intervals")
        values[:, j] = np.asarray(column.values, dtype=float)[order]
    return FeatureMatrix(keys, values)


# =============================================================================
# Extractor
# =============================================================================


class FeatureExtractor:
    """Compute feature matrices for training and test intervals.

    Attributes:
        genome: Sequence provider.
        conservation: Conservation provider.
        config: Chunk size and conservation summary settings.
    """

    def __init__(
        self,
        genome: SequenceProvider,
        conservation: ConservationProvider,
        config: FeatureConfig | None = None,
    ) -> None:
        self.genome = genome
        self.conservation = conservation
        self.config = config or FeatureConfig()

    def _shared_columns(
        self, intervals: list[GenomicInterval]
    ) -> tuple[FeatureColumn, FeatureColumn]:
        cfg = self.config
        cons = conservation_scores(
            intervals,
            self.conservation,
            cfg.chunk_size,
            summary_fun=cfg.summary,
            population=cfg.population,
        )
        gc = gc_fraction(intervals, self.genome, cfg.chunk_size)
        return cons, gc

    def training_features(
        self,
        regions: list[GenomicInterval],
        fragments: list[GenomicInterval],
    ) -> FeatureMatrix:
        """Features of training regions.

        Args:
            regions: Training regions of one class.
            fragments: Alignment spans of the coarse bin the class came from.
        """
        frag_len = median_fragment_length(regions, fragments)
        cons, gc = self._shared_columns(regions)
        return build_feature_matrix(len(regions), frag_len, cons, gc)

    def test_features(self, intervals: list[GenomicInterval]) -> FeatureMatrix:
        """Features of per-fragment test intervals (length = interval width)."""
        frag_len = _dense(np.array([iv.width for iv in intervals], dtype=float))
        cons, gc = self._shared_columns(intervals)
        matrix = build_feature_matrix(len(intervals), frag_len, cons, gc)
        logger.info(f"Extracted features for {len(intervals):,} fragments")
        return matrix
