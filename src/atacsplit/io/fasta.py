"""Reference sequence lookup for GC content.

GenomeAccessor wraps a pyfaidx index and serves the batch lookups the
feature extractor makes. Sequences are returned upper case on the
forward strand; GC fraction does not depend on orientation.

Example:
    >>> from atacsplit.io.fasta import GenomeAccessor
    >>> with GenomeAccessor("genome.fa") as genome:
    ...     genome.seqlengths["chr1"]
    248956422
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pyfaidx

from atacsplit.utils.intervals import GenomicInterval

logger = logging.getLogger(__name__)


class GenomeAccessor:
    """Indexed FASTA reference.

    Attributes:
        path: Path to the FASTA file.
        seqlengths: Mapping of sequence name to length, read from the index.
    """

    def __init__(self, fasta_path: Path | str) -> None:
        """Open the FASTA file, building a .fai index if none exists.

        Raises:
            FileNotFoundError: If the FASTA file doesn't exist.
        """
        self.path = Path(fasta_path)
        if not self.path.exists():
            raise FileNotFoundError(f"FASTA file not found: {self.path}")

        self._fasta: pyfaidx.Fasta | None = pyfaidx.Fasta(
            str(self.path), sequence_always_upper=True, rebuild=False
        )
        self.seqlengths = {name: len(self._fasta[name]) for name in self._fasta.keys()}
        logger.info(f"Opened FASTA: {self.path.name}, {len(self.seqlengths)} sequences")

    def __enter__(self) -> GenomeAccessor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None

    def get_sequences(self, intervals: list[GenomicInterval]) -> list[str]:
        """Sequences of a batch of intervals, in input order.

        Args:
            intervals: 0-based half-open intervals; strand is ignored.

        Returns:
            One upper-case string per interval.

        Raises:
            KeyError: If an interval's sequence is not in the FASTA.
            ValueError: If an interval lies outside its sequence.
        """
        if self._fasta is None:
            raise RuntimeError("FASTA file is closed")

        sequences = []
        for iv in intervals:
            length = self.seqlengths.get(iv.seqid)
            if length is None:
                raise KeyError(f"Sequence not in {self.path.name}: {iv.seqid}")
            if iv.start < 0 or iv.end > length or iv.start > iv.end:
                raise ValueError(
                    f"Interval {iv.seqid}:{iv.start}-{iv.end} outside 0-{length}"
                )
            sequences.append(str(self._fasta[iv.seqid][iv.start : iv.end]))
        return sequences
