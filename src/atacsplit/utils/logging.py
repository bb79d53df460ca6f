"""Logging configuration for atacsplit.

This module provides logging setup for atacsplit, with rich console
output and optional file output.

Features:
    - Rich formatting on the console
    - File logging for debugging
    - Configurable verbosity levels
    - Progress logging for chunked processing
    - Timing of pipeline stages

Example:
    >>> from atacsplit.utils.logging import setup_logging
    >>> setup_logging(verbosity=2)
    >>> logger = logging.getLogger("atacsplit")
    >>> logger.info("Splitting started")
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

# =============================================================================
# Constants
# =============================================================================

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

RICH_FORMAT = "%(message)s"

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
}


# =============================================================================
# Setup Functions
# =============================================================================


def setup_logging(
    verbosity: int = 1,
    log_file: Path | str | None = None,
    use_rich: bool = True,
) -> None:
    """Configure logging for atacsplit.

    Args:
        verbosity: Verbosity level (0=warning, 1=info, 2=debug).
        log_file: Optional file to log to.
        use_rich: Use rich for console output.
    """
    level = VERBOSITY_LEVELS.get(verbosity, logging.DEBUG)

    logger = logging.getLogger("atacsplit")
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.handlers.clear()

    if use_rich:
        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=True,
            show_time=False,
            show_path=False,
        )
        console_handler.setFormatter(logging.Formatter(RICH_FORMAT))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        logger.addHandler(file_handler)


# =============================================================================
# Progress Logging
# =============================================================================


class ProgressLogger:
    """Logger for long-running operations with progress tracking.

    The total may be unknown (None) when reading a stream of chunks.

    Example:
        >>> progress = ProgressLogger(logger, description="Chunks")
        >>> for chunk in chunks:
        ...     process(chunk)
        ...     progress.update(len(chunk))
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: int | None = None,
        interval: int = 1,
        description: str = "Processing",
        unit: str = "items",
    ) -> None:
        self.logger = logger
        self.total = total
        self.interval = interval
        self.description = description
        self.unit = unit
        self.count = 0
        self.updates = 0

    def update(self, n: int = 1) -> None:
        """Record ``n`` more completed items."""
        self.count += n
        self.updates += 1
        if self.updates % self.interval != 0:
            return
        if self.total:
            pct = 100 * self.count / self.total
            self.logger.info(
                f"{self.description}: {self.count:,}/{self.total:,} {self.unit} ({pct:.1f}%)"
            )
        else:
            self.logger.info(f"{self.description}: {self.count:,} {self.unit}")

    def finish(self) -> None:
        """Mark progress as complete."""
        self.logger.info(f"{self.description}: complete ({self.count:,} {self.unit})")


# =============================================================================
# Timing Utilities
# =============================================================================


class Timer:
    """Context manager for timing operations.

    Example:
        >>> with Timer("Coverage", logger):
        ...     build_coverage()
        # Logs: "Coverage completed in 1.23s"
    """

    def __init__(
        self,
        description: str,
        logger: logging.Logger,
        level: int = logging.INFO,
    ) -> None:
        self.description = description
        self.logger = logger
        self.level = level
        self.start_time: float = 0
        self.elapsed: float = 0

    def __enter__(self) -> Timer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.perf_counter() - self.start_time
        self.logger.log(self.level, f"{self.description} completed in {self.elapsed:.2f}s")
