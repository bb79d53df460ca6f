"""Utility functions for atacsplit.

- Interval operations (overlap, disjoin, promoters, flanks, windows)
- Logging configuration

Example:
    >>> from atacsplit.utils.intervals import GenomicInterval, find_overlaps
    >>> from atacsplit.utils.logging import setup_logging
"""

from atacsplit.utils.intervals import GenomicInterval

__all__ = ["GenomicInterval"]
