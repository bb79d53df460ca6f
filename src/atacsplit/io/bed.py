"""BED file reading and writing for transcript and region intervals.

Only the first six BED columns are used. Strand values other than
"+" and "-" are read as "*".

Example:
    >>> from atacsplit.io.bed import read_intervals_bed
    >>> transcripts = read_intervals_bed("transcripts.bed")
"""

from __future__ import annotations

import logging
from pathlib import Path

from atacsplit.utils.intervals import GenomicInterval

logger = logging.getLogger(__name__)


def read_intervals_bed(bed_path: Path | str) -> list[GenomicInterval]:
    """Load intervals from a BED file.

    Args:
        bed_path: Path to BED file (3 to 6+ columns).

    Returns:
        List of GenomicInterval objects in file order.

    Raises:
        ValueError: If a line has fewer than three columns or bad coordinates.
    """
    intervals = []
    with open(bed_path) as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip() or line.startswith(("#", "track", "browser")):
                continue

            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3:
                raise ValueError(f"{bed_path}:{lineno}: expected at least 3 columns")

            start, end = int(parts[1]), int(parts[2])
            if end < start:
                raise ValueError(f"{bed_path}:{lineno}: end {end} < start {start}")

            name = parts[3] if len(parts) > 3 and parts[3] != "." else None
            score = None
            if len(parts) > 4 and parts[4] not in (".", ""):
                score = float(parts[4])
            strand = parts[5] if len(parts) > 5 and parts[5] in ("+", "-") else "*"

            intervals.append(GenomicInterval(parts[0], start, end, strand, name, score))

    logger.debug(f"Read {len(intervals):,} intervals from {Path(bed_path).name}")
    return intervals
