"""Genomic interval operations.

This module provides the interval algebra used across atacsplit:

- Overlap queries between interval sets
- Promoter, flank and sliding-window construction
- Re-centring intervals to a fixed width
- Disjoint partition of two scored interval sets (signed difference)
- Nearest-feature lookup

All coordinates are 0-based half-open. Strand is one of "+", "-" or
"*"; "*" is compatible with both strands when overlaps are strand-aware.

Example:
    >>> from atacsplit.utils.intervals import GenomicInterval, promoters
    >>> tx = GenomicInterval("chr1", 5000, 9000, "+")
    >>> promoters([tx], upstream=1000, downstream=1000)[0]
    GenomicInterval(seqid='chr1', start=4000, end=6000, strand='+', name=None, score=None)
"""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, NamedTuple

import numpy as np

STRANDS = ("+", "-", "*")

# =============================================================================
# Data Structures
# =============================================================================


class GenomicInterval(NamedTuple):
    """A genomic interval with strand and optional annotation.

    Attributes:
        seqid: Chromosome/contig identifier.
        start: Start position (0-based, inclusive).
        end: End position (0-based, exclusive).
        strand: Strand (+, - or *).
        name: Optional identifier (e.g. fragment or transcript name).
        score: Optional numeric annotation.
    """

    seqid: str
    start: int
    end: int
    strand: str = "*"
    name: str | None = None
    score: float | None = None

    @property
    def width(self) -> int:
        """Interval width in base pairs."""
        return self.end - self.start

    @property
    def coords(self) -> tuple[str, int, int]:
        """Coordinates without strand or annotation."""
        return (self.seqid, self.start, self.end)

    def overlaps(self, other: GenomicInterval, ignore_strand: bool = True) -> bool:
        """Check if this interval overlaps another."""
        if self.seqid != other.seqid:
            return False
        if not ignore_strand and not strands_compatible(self.strand, other.strand):
            return False
        return self.start < other.end and other.start < self.end


def strands_compatible(a: str, b: str) -> bool:
    """Return True if features on strands ``a`` and ``b`` may overlap."""
    return a == b or a == "*" or b == "*"


def validate_intervals(intervals: Iterable[GenomicInterval]) -> None:
    """Raise ValueError for an interval with end < start or an unknown strand."""
    for iv in intervals:
        if iv.end < iv.start:
            raise ValueError(f"Interval end must be >= start: {iv}")
        if iv.strand not in STRANDS:
            raise ValueError(f"Unknown strand '{iv.strand}' in {iv}")


def group_by_seqid(
    intervals: Iterable[GenomicInterval],
) -> dict[str, list[int]]:
    """Map seqid to the indices of its intervals, preserving input order."""
    groups: dict[str, list[int]] = defaultdict(list)
    for i, iv in enumerate(intervals):
        groups[iv.seqid].append(i)
    return dict(groups)


# =============================================================================
# Overlap Operations
# =============================================================================


def find_overlaps(
    query: list[GenomicInterval],
    subject: list[GenomicInterval],
) -> dict[int, list[int]]:
    """Find overlapping subject intervals for every query interval.

    Strand is ignored. Empty intervals never overlap anything.

    Args:
        query: Query intervals.
        subject: Subject intervals.

    Returns:
        Mapping from query index to sorted subject indices; queries without
        hits are absent.
    """
    hits: dict[int, list[int]] = {}
    subject_groups = group_by_seqid(subject)

    for seqid, q_idx in group_by_seqid(query).items():
        s_idx = subject_groups.get(seqid)
        if not s_idx:
            continue

        s_idx_arr = np.asarray(s_idx)
        s_starts = np.array([subject[i].start for i in s_idx])
        s_ends = np.array([subject[i].end for i in s_idx])
        order = np.argsort(s_starts, kind="stable")
        s_idx_arr, s_starts, s_ends = s_idx_arr[order], s_starts[order], s_ends[order]
        # Running maximum of ends bounds the leftmost candidate
        max_end = np.maximum.accumulate(s_ends)

        for qi in q_idx:
            q = query[qi]
            if q.end <= q.start:
                continue
            hi = np.searchsorted(s_starts, q.end, side="left")
            lo = np.searchsorted(max_end, q.start, side="right")
            if lo >= hi:
                continue
            cand = np.arange(lo, hi)
            mask = (s_ends[cand] > q.start) & (s_ends[cand] > s_starts[cand])
            if mask.any():
                hits[qi] = sorted(int(x) for x in s_idx_arr[cand[mask]])

    return hits


def nearest_strand(
    regions: list[GenomicInterval],
    features: list[GenomicInterval],
) -> list[str]:
    """Strand of the nearest feature for every region.

    Distance is zero when the feature start lies inside the region, and
    otherwise the gap to the nearer region end. Features are treated as
    points at their start. Regions on a seqid without features get "*".

    Args:
        regions: Regions to annotate.
        features: Point-like features (e.g. 1 bp TSS intervals).

    Returns:
        One strand per region, in region order.
    """
    strands = ["*"] * len(regions)
    by_seqid: dict[str, tuple[np.ndarray, list[str]]] = {}
    for seqid, idx in group_by_seqid(features).items():
        pos = np.array([features[i].start for i in idx])
        order = np.argsort(pos, kind="stable")
        by_seqid[seqid] = (pos[order], [features[idx[j]].strand for j in order])

    for i, region in enumerate(regions):
        entry = by_seqid.get(region.seqid)
        if entry is None:
            continue
        pos, feature_strands = entry
        last = region.end - 1
        k = int(np.searchsorted(pos, region.start, side="left"))
        best_dist = None
        best = "*"
        # Candidates: last feature before the region and first at/after its start
        for j in (k - 1, k):
            if 0 <= j < len(pos):
                p = pos[j]
                if region.start <= p <= last:
                    dist = 0
                elif p < region.start:
                    dist = region.start - p
                else:
                    dist = p - last
                if best_dist is None or dist < best_dist:
                    best_dist, best = dist, feature_strands[j]
        strands[i] = best

    return strands


# =============================================================================
# Construction Operations
# =============================================================================


def promoters(
    intervals: list[GenomicInterval],
    upstream: int,
    downstream: int,
) -> list[GenomicInterval]:
    """Promoter windows around the 5' end of each interval.

    For "+" and "*" intervals the window is ``[start - upstream, start +
    downstream)``; for "-" intervals it is ``[end - downstream, end +
    upstream)``. Annotations are carried over.
    """
    result = []
    for iv in intervals:
        if iv.strand == "-":
            start, end = iv.end - downstream, iv.end + upstream
        else:
            start, end = iv.start - upstream, iv.start + downstream
        result.append(iv._replace(start=start, end=end))
    return result


def flank(
    intervals: list[GenomicInterval],
    width: int,
    start: bool = True,
) -> list[GenomicInterval]:
    """Regions of ``width`` bp adjacent to each interval.

    With ``start=True`` the flank lies before the 5' end (upstream);
    otherwise it lies after the 3' end. Strand "-" intervals have their
    5' end at ``end``.
    """
    result = []
    for iv in intervals:
        five_prime_left = iv.strand != "-"
        if start == five_prime_left:
            new_start, new_end = iv.start - width, iv.start
        else:
            new_start, new_end = iv.end, iv.end + width
        result.append(iv._replace(start=new_start, end=new_end))
    return result


def sliding_windows(
    interval: GenomicInterval,
    width: int,
    step: int,
) -> list[GenomicInterval]:
    """Windows of ``width`` bp every ``step`` bp across an interval.

    Windows run in genomic order; the last window is truncated at the
    interval end.
    """
    windows = []
    pos = interval.start
    while pos < interval.end:
        end = min(pos + width, interval.end)
        windows.append(interval._replace(start=pos, end=end))
        if end >= interval.end:
            break
        pos += step
    return windows


def resize_center(
    intervals: list[GenomicInterval],
    width: int,
) -> list[GenomicInterval]:
    """Re-centre every interval on its midpoint with a fixed width."""
    result = []
    half = width // 2
    for iv in intervals:
        center = iv.start + int(np.round(iv.width / 2))
        new_start = center - half
        result.append(iv._replace(start=new_start, end=new_start + width))
    return result


def trim(
    intervals: list[GenomicInterval],
    seqlengths: dict[str, int],
) -> list[GenomicInterval]:
    """Clip intervals to ``[0, seqlength)``; unknown seqids are only clipped at 0."""
    result = []
    for iv in intervals:
        start = max(iv.start, 0)
        end = iv.end
        length = seqlengths.get(iv.seqid)
        if length is not None:
            end = min(end, length)
        end = max(end, start)
        result.append(iv._replace(start=start, end=end))
    return result


def unique_intervals(intervals: Iterable[GenomicInterval]) -> list[GenomicInterval]:
    """Drop repeated (seqid, start, end, strand) tuples, keeping first occurrence."""
    seen = set()
    result = []
    for iv in intervals:
        key = (iv.seqid, iv.start, iv.end, iv.strand)
        if key not in seen:
            seen.add(key)
            result.append(iv)
    return result


# =============================================================================
# Disjoint Partition
# =============================================================================


def disjoin(intervals: list[GenomicInterval]) -> list[GenomicInterval]:
    """Partition intervals into disjoint atoms.

    Atoms are formed separately for each (seqid, strand) from every start
    and end coordinate; only atoms covered by at least one input interval
    are returned, sorted by seqid, strand and start.
    """
    groups: dict[tuple[str, str], list[GenomicInterval]] = defaultdict(list)
    for iv in intervals:
        if iv.end > iv.start:
            groups[(iv.seqid, iv.strand)].append(iv)

    atoms = []
    for (seqid, strand) in sorted(groups):
        members = groups[(seqid, strand)]
        starts = np.array([iv.start for iv in members])
        ends = np.array([iv.end for iv in members])
        bounds = np.unique(np.concatenate([starts, ends]))
        # Depth over each elementary segment
        depth = np.zeros(len(bounds), dtype=np.int64)
        np.add.at(depth, np.searchsorted(bounds, starts), 1)
        np.add.at(depth, np.searchsorted(bounds, ends), -1)
        depth = np.cumsum(depth)[:-1]
        for k in np.flatnonzero(depth > 0):
            atoms.append(GenomicInterval(seqid, int(bounds[k]), int(bounds[k + 1]), strand))

    return atoms


def _atom_values(
    atoms: list[GenomicInterval],
    scored: list[GenomicInterval],
) -> np.ndarray:
    values = np.zeros(len(atoms), dtype=float)
    hits = find_overlaps(atoms, scored)
    for ai, s_idx in hits.items():
        atom = atoms[ai]
        compatible = [
            j for j in s_idx if strands_compatible(atom.strand, scored[j].strand)
        ]
        if compatible:
            # Later subjects override earlier ones
            score = scored[compatible[-1]].score
            values[ai] = 0.0 if score is None else float(score)
    return values


def signed_difference(
    a: list[GenomicInterval],
    b: list[GenomicInterval],
) -> list[GenomicInterval]:
    """Score the disjoint atoms of ``a`` and ``b`` by ``score(a) - score(b)``.

    The union of both sets is partitioned with :func:`disjoin`; each atom
    takes the score of the overlapping strand-compatible interval of each
    set (zero where a set has none) and the two are subtracted.

    Args:
        a: Scored intervals counted positively.
        b: Scored intervals counted negatively.

    Returns:
        Atoms with ``score`` set to the difference.
    """
    atoms = disjoin(list(a) + list(b))
    diff = _atom_values(atoms, a) - _atom_values(atoms, b)
    return [atom._replace(score=float(d)) for atom, d in zip(atoms, diff)]
