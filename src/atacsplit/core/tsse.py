"""TSS enrichment score.

Read depth in sliding windows across each promoter is normalised by the
depth in flanks just outside the promoter, averaged over transcripts,
smoothed by local regression, and the peak of the smoothed profile is
reported as the score.

For a promoter ``P`` of width ``upstream + downstream``, window ``w`` and
flank means ``l`` and ``r`` (each ``end_size`` bp wide)::

    value(w) = mean(w) * end_size / ((l + r) / 2) / width

Example:
    >>> from atacsplit.core.tsse import tss_enrichment_score
    >>> result = tss_enrichment_score(alignments, transcripts)
    >>> round(result.score, 2)
    7.41
"""

from __future__ import annotations

import logging
import warnings
from typing import NamedTuple, Sequence

import numpy as np
from statsmodels.nonparametric.smoothers_lowess import lowess

from atacsplit.config import TSSConfig
from atacsplit.core.coverage import CoverageTrack
from atacsplit.errors import InsufficientSignalError
from atacsplit.io.bam import AlignmentRecord, AlignmentSet, load_alignments
from atacsplit.utils.intervals import (
    GenomicInterval,
    flank,
    group_by_seqid,
    promoters,
    sliding_windows,
    unique_intervals,
)

logger = logging.getLogger(__name__)

# Fewer finite points than this are reported unsmoothed
MIN_SMOOTHING_POINTS = 3


class TSSEnrichment(NamedTuple):
    """TSS enrichment result.

    Attributes:
        values: Averaged normalised profile, one value per window.
        score: Maximum of the smoothed profile.
    """

    values: np.ndarray
    score: float


def promoter_coverage(
    track: CoverageTrack,
    transcripts: list[GenomicInterval],
    config: TSSConfig,
) -> np.ndarray:
    """Normalised window values of every promoter with usable flanks.

    Args:
        track: Coverage over the transcripts' sequences.
        transcripts: Unique transcripts on sequences of ``track``.
        config: Window geometry and pseudocount.

    Returns:
        Array of shape (n_kept_promoters, n_windows).
    """
    span = config.upstream + config.downstream
    offsets = sliding_windows(GenomicInterval("", 0, span), config.width, config.window_step)
    win_starts = np.array([w.start for w in offsets])
    win_ends = np.array([w.end for w in offsets])

    rows = []
    for seqid, idx in group_by_seqid(transcripts).items():
        proms = promoters([transcripts[i] for i in idx], config.upstream, config.downstream)
        starts = np.array([p.start for p in proms])

        # Windows run in genomic order regardless of strand
        window_means = track.range_means(
            seqid,
            (starts[:, None] + win_starts[None, :]).ravel(),
            (starts[:, None] + win_ends[None, :]).ravel(),
        ).reshape(len(proms), len(offsets))

        left = flank(proms, config.end_size, start=True)
        right = flank(proms, config.end_size, start=False)
        vl = track.range_means(seqid, np.array([f.start for f in left]), np.array([f.end for f in left]))
        vr = track.range_means(seqid, np.array([f.start for f in right]), np.array([f.end for f in right]))

        vl = np.where(np.isnan(vl), vr, vl)
        vr = np.where(np.isnan(vr), vl, vr)
        vl = np.nan_to_num(vl, nan=config.pseudocount)
        vr = np.nan_to_num(vr, nan=config.pseudocount)
        window_means = np.nan_to_num(window_means, nan=config.pseudocount)

        blk = vl + vr
        keep = blk > 0
        rows.append(
            window_means[keep] * config.end_size / (blk[keep, None] / 2) / config.width
        )

    if not rows:
        return np.empty((0, len(offsets)))
    return np.vstack(rows)


def smooth_profile(values: np.ndarray, span: float) -> np.ndarray:
    """Local linear regression of the profile, evaluated at every bin index."""
    x = np.arange(1, len(values) + 1, dtype=float)
    finite = np.isfinite(values)
    if finite.sum() < MIN_SMOOTHING_POINTS:
        return values.astype(float)
    return lowess(values[finite], x[finite], frac=span, it=0, delta=0.0, xvals=x)


def tss_enrichment_score(
    alignments: AlignmentSet | Sequence[AlignmentRecord],
    transcripts: list[GenomicInterval],
    config: TSSConfig | None = None,
) -> TSSEnrichment:
    """Compute the TSS enrichment score of a set of alignments.

    Args:
        alignments: Alignment records, or an AlignmentSet whose header
            supplies sequence lengths. A deferred set is read from its
            file first.
        transcripts: Transcript intervals (strand-aware).
        config: Window geometry, pseudocount and smoothing span.

    Returns:
        TSSEnrichment with the raw averaged profile and the score.

    Raises:
        InsufficientSignalError: If no transcript yields a usable profile.
    """
    config = config or TSSConfig()
    if isinstance(alignments, AlignmentSet):
        if alignments.is_deferred:
            alignments = load_alignments(alignments.source, minimal=True)
        records = alignments.records
        seqlengths = alignments.seqlengths
    else:
        records = list(alignments)
        seqlengths = {}

    track = CoverageTrack.from_intervals((r.to_interval() for r in records), seqlengths)
    tx_seqids = {t.seqid for t in transcripts}
    seqids = [s for s in track.seqids if track.mean(s) > 0 and s in tx_seqids]
    track = track.subset(seqids)
    if config.pseudocount != 0:
        track = track.add(config.pseudocount)

    selected = unique_intervals(t for t in transcripts if t.seqid in track)
    logger.info(f"Scoring {len(selected):,} transcripts on {len(seqids)} sequences")

    rows = promoter_coverage(track, selected, config)
    del track
    if len(rows) == 0:
        raise InsufficientSignalError("No transcript yields a usable TSS profile")

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        values = np.nanmean(rows, axis=0)
    smoothed = smooth_profile(values, config.span)
    finite = smoothed[np.isfinite(smoothed)]
    if len(finite) == 0:
        raise InsufficientSignalError("TSS profile has no finite values")

    score = float(finite.max())
    logger.info(f"TSS enrichment score: {score:.3f}")
    return TSSEnrichment(values, score)
