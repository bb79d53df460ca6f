"""Training set construction from fragment coverage.

Regions densely covered by nucleosome-free fragments but not by
mononucleosome fragments (and the reverse) are used as labelled training
examples for the fragment classifier.

Algorithm:
    1. Per sequence, find the depth marking the top ``training_fraction``
       of covered positions in each track; share the lower of the two.
    2. Take maximal runs above the shared depth as candidate regions.
    3. Give each candidate the strand of its nearest TSS.
    4. Disjoin both candidate sets and score each atom by nucleosome-free
       minus mononucleosome weight; keep atoms of at least
       ``min_atom_width`` bp.
    5. Re-centre atoms to ``half_size_of_nucleosome`` bp and keep the
       best-covered ``max_training_regions`` per class.

Example:
    >>> from atacsplit.config import TrainingConfig
    >>> from atacsplit.core.training import TrainingSetBuilder
    >>> builder = TrainingSetBuilder(TrainingConfig())
    >>> training = builder.build(nf_track, mono_track, transcripts)
    >>> len(training.free), len(training.nucleosome)
    (8731, 10022)
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np

from atacsplit.config import TrainingConfig
from atacsplit.core.coverage import CoverageTrack
from atacsplit.errors import InsufficientDataError
from atacsplit.utils.intervals import (
    GenomicInterval,
    nearest_strand,
    promoters,
    resize_center,
    signed_difference,
    trim,
    unique_intervals,
)

logger = logging.getLogger(__name__)


class TrainingSet(NamedTuple):
    """Training regions of both classes.

    Attributes:
        free: Nucleosome-free regions, score = mean nucleosome-free coverage.
        nucleosome: Mononucleosome regions, score = mean mononucleosome coverage.
    """

    free: list[GenomicInterval]
    nucleosome: list[GenomicInterval]


def shared_thresholds(
    nf_track: CoverageTrack,
    mono_track: CoverageTrack,
    fraction: float,
) -> dict[str, float]:
    """Per-sequence minimum of the two tracks' quantile thresholds."""
    nf_q = nf_track.quantile_thresholds(fraction)
    mono_q = mono_track.quantile_thresholds(fraction)
    return {s: min(nf_q[s], mono_q[s]) for s in nf_q if s in mono_q}


def _check_not_empty(free: list, nucleosome: list) -> None:
    if not nucleosome:
        raise InsufficientDataError(
            "Not enough mononucleosome reads for training; "
            "split without conservation scores instead"
        )
    if not free:
        raise InsufficientDataError(
            "Not enough nucleosome free reads for training; "
            "split without conservation scores instead"
        )


class TrainingSetBuilder:
    """Build classifier training regions from two coverage tracks.

    Attributes:
        config: Training set parameters.
    """

    def __init__(self, config: TrainingConfig | None = None) -> None:
        self.config = config or TrainingConfig()

    def build(
        self,
        nf_track: CoverageTrack,
        mono_track: CoverageTrack,
        transcripts: list[GenomicInterval],
    ) -> TrainingSet:
        """Select nucleosome-free and mononucleosome training regions.

        Args:
            nf_track: Coverage of nucleosome-free fragments.
            mono_track: Coverage of mononucleosome fragments, over the
                same sequences.
            transcripts: Transcripts whose TSS give candidate strands.

        Returns:
            TrainingSet of re-centred, ranked regions (strand "*").

        Raises:
            InsufficientDataError: If either class has no candidate regions.
        """
        cfg = self.config
        thresholds = shared_thresholds(nf_track, mono_track, cfg.training_fraction)
        logger.debug(f"Shared coverage thresholds: {thresholds}")

        nf_regions = nf_track.slice_above(thresholds)
        mono_regions = mono_track.slice_above(thresholds)
        _check_not_empty(nf_regions, mono_regions)
        logger.info(
            f"Candidate regions: {len(nf_regions):,} nucleosome free, "
            f"{len(mono_regions):,} mononucleosome"
        )

        tss = unique_intervals(promoters(transcripts, upstream=0, downstream=1))
        nf_regions = self._annotate(nf_regions, tss)
        mono_regions = self._annotate(mono_regions, tss)
        del tss

        atoms = signed_difference(nf_regions, mono_regions)
        del nf_regions, mono_regions
        atoms = [a for a in atoms if a.width >= cfg.min_atom_width]
        free = [a for a in atoms if a.score > 0]
        nucleosome = [a for a in atoms if a.score < 0]
        del atoms
        _check_not_empty(free, nucleosome)

        free = self._rank(free, nf_track)
        nucleosome = self._rank(nucleosome, mono_track)
        _check_not_empty(free, nucleosome)

        logger.info(
            f"Training regions: {len(free):,} nucleosome free, "
            f"{len(nucleosome):,} mononucleosome"
        )
        return TrainingSet(free, nucleosome)

    @staticmethod
    def _annotate(
        regions: list[GenomicInterval],
        tss: list[GenomicInterval],
    ) -> list[GenomicInterval]:
        strands = nearest_strand(regions, tss)
        return [r._replace(strand=s, score=1.0) for r, s in zip(regions, strands)]

    def _rank(
        self,
        regions: list[GenomicInterval],
        track: CoverageTrack,
    ) -> list[GenomicInterval]:
        """Re-centre, score by own-track coverage and keep the best regions."""
        regions = resize_center(regions, self.config.half_size_of_nucleosome)
        regions = [
            r._replace(strand="*")
            for r in trim(regions, track.seqlengths)
            if r.seqid in track
        ]
        regions = [r for r in regions if r.width > 0]

        means = track.view_means(regions)
        order = np.argsort(-means, kind="stable")
        ranked = [regions[i]._replace(score=float(means[i])) for i in order]
        return ranked[: self.config.max_training_regions]
