"""Split ATAC-seq alignments into nucleosome categories.

split_alignments_by_cut is the entry point of the splitting pipeline. It
chooses one of three modes:

- streaming: the alignment set is a deferred handle, an output directory
  is given and no conservation scores are supplied; the file is split
  chunk by chunk (see atacsplit.core.streaming)
- size only: no conservation scores; records are binned by template length
- refinement: the size split is refined with a classifier trained on
  fragment length, conservation and GC content

Example:
    >>> from atacsplit import split_alignments_by_cut
    >>> from atacsplit.io.bam import load_alignments
    >>> bins = split_alignments_by_cut(load_alignments("sample.bam"), out_dir="split")
    >>> {k: len(v) for k, v in bins.items()}
    {'NucleosomeFree': 51200, 'inter1': 20311, ...}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from atacsplit.config import Config
from atacsplit.core.binning import split_by_size, validate_scheme
from atacsplit.core.coverage import CoverageTrack
from atacsplit.core.features import (
    ConservationProvider,
    FeatureExtractor,
    SequenceProvider,
    fragment_intervals,
)
from atacsplit.core.refine import ClassifierBackend, FragmentRefiner, check_fragment_names
from atacsplit.core.streaming import StreamingDriver
from atacsplit.core.training import TrainingSetBuilder
from atacsplit.errors import ConfigurationError, DataConsistencyError, InsufficientDataError
from atacsplit.io.bam import (
    AlignmentRecord,
    AlignmentSet,
    load_alignments,
    strip_payload,
    write_split,
)
from atacsplit.utils.intervals import GenomicInterval
from atacsplit.utils.logging import Timer

logger = logging.getLogger(__name__)


def split_alignments_by_cut(
    alignments: AlignmentSet | Sequence[AlignmentRecord],
    transcripts: list[GenomicInterval] | None = None,
    genome: SequenceProvider | None = None,
    conservation: ConservationProvider | None = None,
    out_dir: Path | str | None = None,
    config: Config | None = None,
    classifier: ClassifierBackend | None = None,
    log_level: int = logging.INFO,
) -> dict[str, list[AlignmentRecord]]:
    """Split alignments by fragment size, optionally refined by a classifier.

    Args:
        alignments: In-memory records, or an AlignmentSet (possibly a
            deferred handle bound to a BAM file).
        transcripts: Transcripts used for training region strands.
            Required with ``conservation``.
        genome: Sequence provider for GC content. Required with
            ``conservation``.
        conservation: Conservation provider; enables refinement.
        out_dir: If given, each non-empty category is written to
            ``<out_dir>/<label>.bam`` and returned records carry no
            sequence or qualities.
        config: Pipeline configuration (defaults if None).
        classifier: Classifier backend for refinement (random forest if None).
        log_level: Level of the size split summary line.

    Returns:
        Mapping from every label, in scheme order, to its records.

    Raises:
        ConfigurationError: For an invalid label scheme, missing refinement
            inputs, or an empty set without a source.
        InsufficientDataError: If there are no reads, or refinement finds
            no training regions.
        DataConsistencyError: If feature sources disagree, or the genome
            does not match the alignment header.
    """
    config = config or Config()
    scheme = config.binning
    validate_scheme(scheme)

    if not isinstance(alignments, AlignmentSet):
        alignments = AlignmentSet(records=list(alignments))

    if alignments.is_deferred and out_dir is not None and conservation is None:
        logger.info(f"Streaming {alignments.source.path.name} in chunks")
        return StreamingDriver(alignments.source, scheme, out_dir, config.streaming).run()

    if not alignments.records:
        if alignments.source is None:
            raise ConfigurationError("Alignment set is empty and not bound to a file")
        alignments = load_alignments(alignments.source)
    if not alignments.records:
        raise InsufficientDataError("No reads in the alignment set")

    declared_lengths = alignments.seqlengths
    header = alignments.ensure_header()
    bins = split_by_size(alignments.records, scheme, log_level=log_level)

    if conservation is not None:
        if transcripts is None or genome is None:
            raise ConfigurationError(
                "Refinement with conservation scores needs transcripts and a genome"
            )
        with Timer("Refinement", logger):
            bins = _refine(
                alignments.records,
                bins,
                transcripts,
                genome,
                conservation,
                alignments.seqlengths,
                declared_lengths,
                config,
                classifier,
            )

    if out_dir is not None:
        write_split(bins, out_dir, header)
        bins = {label: strip_payload(records) for label, records in bins.items()}
    return bins


def _refine(
    records: list[AlignmentRecord],
    bins: dict[str, list[AlignmentRecord]],
    transcripts: list[GenomicInterval],
    genome: SequenceProvider,
    conservation: ConservationProvider,
    seqlengths: dict[str, int],
    declared_lengths: dict[str, int],
    config: Config,
    classifier: ClassifierBackend | None,
) -> dict[str, list[AlignmentRecord]]:
    """Train on coverage-selected regions and refine the size split."""
    scheme = config.binning
    check_fragment_names(records)

    # Working set: sequences holding reads and at least one transcript
    tx_seqids = {t.seqid for t in transcripts}
    working = [s for s in dict.fromkeys(r.reference_name for r in records) if s in tx_seqids]
    if not working:
        raise InsufficientDataError("No transcripts on the sequences holding reads")
    working_set = set(working)
    lengths = {s: seqlengths[s] for s in working if s in seqlengths}
    _check_genome_lengths(genome, {s: declared_lengths[s] for s in working if s in declared_lengths})

    nf_fragments = [
        r.to_interval() for r in bins[scheme.nucleosome_free_label]
        if r.reference_name in working_set
    ]
    mono_fragments = [
        r.to_interval() for r in bins[scheme.mononucleosome_label]
        if r.reference_name in working_set
    ]
    del bins

    nf_track = CoverageTrack.from_intervals(nf_fragments, lengths).subset(working)
    mono_track = CoverageTrack.from_intervals(mono_fragments, lengths).subset(working)
    training = TrainingSetBuilder(config.training).build(
        nf_track,
        mono_track,
        [t for t in transcripts if t.seqid in working_set],
    )
    del nf_track, mono_track

    extractor = FeatureExtractor(genome, conservation, config.features)
    free_features = extractor.training_features(training.free, nf_fragments)
    nucleosome_features = extractor.training_features(training.nucleosome, mono_fragments)
    del nf_fragments, mono_fragments, training

    test_intervals = fragment_intervals(
        [r for r in records if r.reference_name in working_set], seqlengths
    )
    test_features = extractor.test_features(test_intervals)

    refiner = FragmentRefiner(scheme, config.refine, classifier)
    return refiner.refine(
        records, test_intervals, test_features, free_features, nucleosome_features
    )


def _check_genome_lengths(genome: SequenceProvider, seqlengths: dict[str, int]) -> None:
    # GC windows are cut against the alignment header lengths
    for seqid, length in seqlengths.items():
        genome_length = genome.seqlengths.get(seqid)
        if genome_length is None:
            raise DataConsistencyError(f"Sequence {seqid} holds reads but is not in the genome")
        if genome_length != length:
            raise DataConsistencyError(
                f"Length of {seqid} is {length:,} in the alignments but {genome_length:,} in the genome"
            )
