"""Run-length encoded read-depth tracks.

A CoverageTrack stores, for every sequence, the depth function over
positions ``[0, length)`` as runs (run end coordinates plus one value per
run). Positions beyond the last run, or before 0, take the track's
background value, which is 0 unless a pseudocount was added.

Example:
    >>> from atacsplit.core.coverage import CoverageTrack
    >>> track = CoverageTrack.from_intervals(fragments, seqlengths)
    >>> track.quantile_thresholds(0.15)
    {'chr1': 4.0}
    >>> regions = track.slice_above({"chr1": 4.0})
"""

from __future__ import annotations

import logging
from typing import Iterable, NamedTuple

import numpy as np

from atacsplit.utils.intervals import GenomicInterval, group_by_seqid

logger = logging.getLogger(__name__)


class Runs(NamedTuple):
    """Run-length encoding of one sequence.

    Attributes:
        ends: Exclusive end coordinate of each run (strictly increasing).
        values: Depth of each run.
    """

    ends: np.ndarray
    values: np.ndarray

    @property
    def starts(self) -> np.ndarray:
        """Start coordinate of each run."""
        return np.concatenate([[0], self.ends[:-1]])

    @property
    def lengths(self) -> np.ndarray:
        """Length of each run."""
        return np.diff(np.concatenate([[0], self.ends]))

    @property
    def length(self) -> int:
        """Total encoded length."""
        return int(self.ends[-1]) if len(self.ends) else 0


class CoverageTrack:
    """Per-sequence run-length depth function.

    Attributes:
        runs: Mapping from seqid to its Runs.
        background: Depth outside the encoded runs.
    """

    def __init__(self, runs: dict[str, Runs], background: float = 0.0) -> None:
        self.runs = runs
        self.background = background
        # Cumulative integrals at run ends, built lazily per seqid
        self._integrals: dict[str, np.ndarray] = {}

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_intervals(
        cls,
        intervals: Iterable[GenomicInterval],
        seqlengths: dict[str, int] | None = None,
    ) -> CoverageTrack:
        """Accumulate depth from intervals, ignoring strand.

        Args:
            intervals: Intervals each adding 1 to the positions they cover.
            seqlengths: Sequence lengths; sequences listed here get a run
                reaching their full length even without intervals.

        Returns:
            The coverage track.
        """
        seqlengths = seqlengths or {}
        starts: dict[str, list[int]] = {}
        ends: dict[str, list[int]] = {}
        for iv in intervals:
            if iv.end <= iv.start:
                continue
            starts.setdefault(iv.seqid, []).append(max(iv.start, 0))
            ends.setdefault(iv.seqid, []).append(iv.end)

        runs = {}
        for seqid in list(seqlengths) + [s for s in starts if s not in seqlengths]:
            length = seqlengths.get(seqid)
            s = np.asarray(starts.get(seqid, []), dtype=np.int64)
            e = np.asarray(ends.get(seqid, []), dtype=np.int64)
            if length is not None:
                e = np.minimum(e, length)
                keep = s < e
                s, e = s[keep], e[keep]
            total = length if length is not None else (int(e.max()) if len(e) else 0)
            runs[seqid] = _encode(s, e, total)

        logger.debug(f"Built coverage for {len(runs)} sequences")
        return cls(runs)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def seqids(self) -> list[str]:
        """Sequences present in the track."""
        return list(self.runs)

    @property
    def seqlengths(self) -> dict[str, int]:
        """Encoded length of every sequence."""
        return {s: r.length for s, r in self.runs.items()}

    def __contains__(self, seqid: str) -> bool:
        return seqid in self.runs

    def subset(self, seqids: Iterable[str]) -> CoverageTrack:
        """Track restricted to ``seqids`` (missing ones are skipped)."""
        return CoverageTrack(
            {s: self.runs[s] for s in seqids if s in self.runs},
            self.background,
        )

    def add(self, value: float) -> CoverageTrack:
        """Track with ``value`` added at every position."""
        return CoverageTrack(
            {s: Runs(r.ends, r.values + value) for s, r in self.runs.items()},
            self.background + value,
        )

    def mean(self, seqid: str) -> float:
        """Mean depth over the encoded length of a sequence."""
        r = self.runs[seqid]
        if r.length == 0:
            return 0.0
        return float(np.sum(r.values * r.lengths) / r.length)

    def values(self, seqid: str, start: int, end: int) -> np.ndarray:
        """Per-base depth over ``[start, end)``."""
        r = self.runs[seqid]
        pos = np.arange(start, end)
        out = np.full(len(pos), self.background, dtype=float)
        inside = (pos >= 0) & (pos < r.length)
        idx = np.searchsorted(r.ends, pos[inside], side="right")
        out[inside] = r.values[idx]
        return out

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def quantile_thresholds(self, fraction: float) -> dict[str, float]:
        """Per-sequence depth threshold marking the top ``fraction`` of positions.

        Zero-depth positions are excluded. The threshold is the smallest
        depth ``d`` whose cumulative share of positive positions is at least
        ``1 - fraction``; 0 when no position has positive depth.
        """
        thresholds = {}
        for seqid, r in self.runs.items():
            lengths = r.lengths
            positive = r.values > 0
            if not positive.any():
                thresholds[seqid] = 0.0
                continue
            depths, inverse = np.unique(r.values[positive], return_inverse=True)
            counts = np.bincount(inverse, weights=lengths[positive])
            cumulative = np.cumsum(counts) / counts.sum()
            hit = np.flatnonzero(cumulative >= 1 - fraction)
            thresholds[seqid] = float(depths[hit[0]]) if len(hit) else 0.0
        return thresholds

    def slice_above(self, thresholds: dict[str, float]) -> list[GenomicInterval]:
        """Maximal runs of positions whose depth is strictly above the threshold.

        Sequences without a threshold are skipped.
        """
        regions = []
        for seqid, r in self.runs.items():
            if seqid not in thresholds:
                continue
            above = r.values > thresholds[seqid]
            if not above.any():
                continue
            starts = r.starts
            # Boundaries where the above/below state flips
            flips = np.flatnonzero(np.diff(np.concatenate([[False], above, [False]]).astype(int)))
            for first, last in zip(flips[::2], flips[1::2]):
                regions.append(
                    GenomicInterval(seqid, int(starts[first]), int(r.ends[last - 1]), "*")
                )
        return regions

    def view_means(self, intervals: list[GenomicInterval]) -> np.ndarray:
        """Mean depth over each interval, clipped to the encoded sequence.

        Intervals on unknown sequences or with no bases inside
        ``[0, length)`` give NaN.
        """
        means = np.full(len(intervals), np.nan)
        for seqid, idx in group_by_seqid(intervals).items():
            if seqid not in self.runs:
                continue
            means[idx] = self.range_means(
                seqid,
                np.array([intervals[i].start for i in idx]),
                np.array([intervals[i].end for i in idx]),
            )
        return means

    def range_means(self, seqid: str, starts: np.ndarray, ends: np.ndarray) -> np.ndarray:
        """Mean depth over ``[starts[i], ends[i])`` on one sequence, clipped as in view_means."""
        r = self.runs[seqid]
        starts = np.clip(starts, 0, r.length)
        ends = np.clip(ends, 0, r.length)
        widths = ends - starts
        total = self._integral(seqid, ends) - self._integral(seqid, starts)
        with np.errstate(invalid="ignore", divide="ignore"):
            return np.where(widths > 0, total / widths, np.nan)

    def _integral(self, seqid: str, positions: np.ndarray) -> np.ndarray:
        """Sum of depth over ``[0, x)`` for positions clipped to the sequence."""
        r = self.runs[seqid]
        cum = self._integrals.get(seqid)
        if cum is None:
            cum = np.concatenate([[0.0], np.cumsum(r.values * r.lengths)])
            self._integrals[seqid] = cum
        positions = np.asarray(positions)
        k = np.searchsorted(r.ends, positions, side="right")
        run_starts = np.concatenate([[0], r.ends])
        result = cum[k].astype(float)
        inside = k < len(r.values)
        result[inside] += (positions[inside] - run_starts[k[inside]]) * r.values[k[inside]]
        return result


def _encode(starts: np.ndarray, ends: np.ndarray, length: int) -> Runs:
    """Run-length encode depth from start/end events over ``[0, length)``."""
    if length <= 0:
        return Runs(np.array([], dtype=np.int64), np.array([], dtype=float))

    positions = np.concatenate([starts, ends, [0, length]])
    deltas = np.concatenate([np.ones(len(starts)), -np.ones(len(ends)), [0, 0]])
    bounds, inverse = np.unique(positions, return_inverse=True)
    change = np.zeros(len(bounds))
    np.add.at(change, inverse, deltas)
    depth = np.cumsum(change)[:-1]
    run_ends = bounds[1:]

    # Merge neighbouring runs with equal depth
    keep = np.concatenate([depth[1:] != depth[:-1], [True]])
    return Runs(run_ends[keep].astype(np.int64), depth[keep].astype(float))
