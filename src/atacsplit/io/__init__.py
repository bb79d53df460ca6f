"""Input/output handlers for atacsplit.

This module provides readers and writers for the file formats used by
the splitting pipeline:

- BAM: ATAC-seq alignments (pysam)
- FASTA: Genome sequence (pyfaidx)
- bigWig: Conservation scores (pyBigWig)
- BED: Transcript intervals

Example:
    >>> from atacsplit.io import load_alignments, read_intervals_bed
    >>> alignments = load_alignments("sample.bam")
    >>> transcripts = read_intervals_bed("transcripts.bed")
"""

from atacsplit.io.bam import (
    AlignmentRecord,
    AlignmentSet,
    BamSource,
    load_alignments,
    write_split,
)
from atacsplit.io.bed import read_intervals_bed
from atacsplit.io.conservation import BigWigConservation
from atacsplit.io.fasta import GenomeAccessor

__all__: list[str] = [
    "AlignmentRecord",
    "AlignmentSet",
    "BamSource",
    "BigWigConservation",
    "GenomeAccessor",
    "load_alignments",
    "read_intervals_bed",
    "write_split",
]
