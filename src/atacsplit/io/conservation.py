"""Per-base conservation scores from bigWig files.

Conservation tracks (phastCons, phyloP) are read with pyBigWig. A source
may hold several populations, one bigWig file each; the population key
selects which file answers a query.

Example:
    >>> from atacsplit.io.conservation import BigWigConservation
    >>> with BigWigConservation("phastCons100way.bw") as cons:
    ...     scored = cons.scores(intervals, summary_fun="mean")
    >>> scored[0].score
    0.42
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

import numpy as np
import pyBigWig

from atacsplit.errors import ConfigurationError
from atacsplit.utils.intervals import GenomicInterval

logger = logging.getLogger(__name__)

# Summaries computed from raw base values; NaN (no data) bases are ignored
_SUMMARIES: dict[str, Callable[[np.ndarray], float]] = {
    "mean": np.nanmean,
    "median": np.nanmedian,
    "max": np.nanmax,
    "min": np.nanmin,
}

DEFAULT_POPULATION = "default"


class BigWigConservation:
    """Conservation provider backed by one bigWig file per population.

    Attributes:
        paths: Population name to bigWig path.

    Example:
        >>> cons = BigWigConservation({"DP2": "phyloP.bw", "DP1": "phastCons.bw"})
        >>> cons.scores(intervals, population="DP1")
    """

    def __init__(self, paths: dict[str, Path | str] | Path | str) -> None:
        if not isinstance(paths, dict):
            paths = {DEFAULT_POPULATION: paths}
        if not paths:
            raise ConfigurationError("At least one bigWig file is required")
        self.paths = {name: Path(p) for name, p in paths.items()}
        for path in self.paths.values():
            if not path.exists():
                raise FileNotFoundError(f"bigWig file not found: {path}")
        self._handles: dict[str, Any] = {}

    @property
    def populations(self) -> list[str]:
        """Available population keys."""
        return list(self.paths)

    def __enter__(self) -> BigWigConservation:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close all open bigWig files."""
        for bw in self._handles.values():
            bw.close()
        self._handles.clear()

    def _handle(self, population: str | None) -> Any:
        if population is None:
            population = next(iter(self.paths))
        if population not in self.paths:
            raise ConfigurationError(
                f"Unknown conservation population '{population}', "
                f"available: {self.populations}"
            )
        if population not in self._handles:
            self._handles[population] = pyBigWig.open(str(self.paths[population]))
            logger.debug(f"Opened bigWig: {self.paths[population].name}")
        return self._handles[population]

    def scores(
        self,
        intervals: list[GenomicInterval],
        summary_fun: str = "mean",
        population: str | None = None,
    ) -> list[GenomicInterval]:
        """Summarise conservation under each interval.

        Args:
            intervals: Query intervals.
            summary_fun: One of "mean", "median", "max", "min".
            population: Population key; the first file when None.

        Returns:
            The query intervals, in order, with ``score`` set to the
            summary (NaN where the file has no data).
        """
        if summary_fun not in _SUMMARIES:
            raise ConfigurationError(
                f"Unknown summary function '{summary_fun}', expected one of {list(_SUMMARIES)}"
            )
        bw = self._handle(population)
        chroms = bw.chroms()
        summarise = _SUMMARIES[summary_fun]

        scored = []
        for iv in intervals:
            length = chroms.get(iv.seqid)
            value = np.nan
            if length is not None:
                start, end = max(iv.start, 0), min(iv.end, length)
                if start < end:
                    values = np.asarray(bw.values(iv.seqid, start, end), dtype=float)
                    if not np.isnan(values).all():
                        value = float(summarise(values))
            scored.append(iv._replace(score=value))
        return scored
