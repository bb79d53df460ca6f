"""Size-based binning of fragments.

Fragments are assigned to labels by the absolute value of their template
length. Bins are right-closed, ``(breaks[i], breaks[i + 1]]``: a length
equal to a breakpoint belongs to the lower bin. Lengths at or below the
first breakpoint, or above the last, fall in no bin.

Example:
    >>> from atacsplit.config import BinningConfig
    >>> from atacsplit.core.binning import split_by_size
    >>> bins = split_by_size(records, BinningConfig())
    >>> list(bins)[:3]
    ['NucleosomeFree', 'inter1', 'mononucleosome']
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from atacsplit.config import BinningConfig
from atacsplit.errors import ConfigurationError
from atacsplit.io.bam import AlignmentRecord

logger = logging.getLogger(__name__)


def validate_scheme(scheme: BinningConfig) -> None:
    """Check breaks and labels, raising ConfigurationError if inconsistent."""
    scheme.validate()


def assign_bins(lengths: Sequence[float] | np.ndarray, breaks: Sequence[float]) -> np.ndarray:
    """Bin index of each length, or -1 when it falls outside every bin.

    Args:
        lengths: Non-negative fragment lengths.
        breaks: Strictly increasing breakpoints.

    Returns:
        Integer array of bin indices.
    """
    breaks_arr = np.asarray(breaks, dtype=float)
    lengths_arr = np.asarray(lengths, dtype=float)
    idx = np.searchsorted(breaks_arr, lengths_arr, side="left") - 1
    idx[(idx < 0) | (idx >= len(breaks_arr) - 1)] = -1
    return idx


def split_by_size(
    records: Sequence[AlignmentRecord],
    scheme: BinningConfig,
    log_level: int = logging.INFO,
) -> dict[str, list[AlignmentRecord]]:
    """Partition records into size bins.

    Args:
        records: Records with a template length.
        scheme: Breakpoints and labels.
        log_level: Level of the summary log line.

    Returns:
        Mapping from every label, in scheme order, to its records (possibly
        empty).

    Raises:
        ConfigurationError: If the scheme is invalid or a record has no
            template length.
    """
    validate_scheme(scheme)

    missing = [r.name for r in records if r.template_length is None]
    if missing:
        raise ConfigurationError(
            f"{len(missing)} records have no template length, e.g. {missing[0]}"
        )

    lengths = np.fromiter((abs(r.template_length) for r in records), dtype=float, count=len(records))
    idx = assign_bins(lengths, scheme.breaks)

    bins: dict[str, list[AlignmentRecord]] = {label: [] for label in scheme.labels}
    for record, i in zip(records, idx):
        if i >= 0:
            bins[scheme.labels[i]].append(record)

    dropped = int(np.sum(idx < 0))
    if dropped:
        logger.debug(f"{dropped:,} records outside ({scheme.breaks[0]}, {scheme.breaks[-1]}] dropped")

    logger.log(
        log_level,
        "Size split: " + ", ".join(f"{k}={len(v):,}" for k, v in bins.items()),
    )
    return bins
