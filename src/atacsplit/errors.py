"""Exceptions raised by atacsplit.

ConfigurationError is a ValueError so callers validating parameters can
catch it the usual way. The remaining errors describe data that cannot
support the requested computation.
"""


class AtacSplitError(Exception):
    """Base class for atacsplit errors."""


class ConfigurationError(AtacSplitError, ValueError):
    """Raised for a malformed label scheme or bad parameter combination."""


class InsufficientDataError(AtacSplitError):
    """Raised when a candidate or training set ends up empty.

    Refinement cannot proceed; split without conservation scores instead.
    """


class DataConsistencyError(AtacSplitError):
    """Raised when feature sources disagree on row count or row keys."""


class ProviderContractError(DataConsistencyError):
    """Raised when a score provider returns intervals that differ from the query."""


class InsufficientSignalError(AtacSplitError):
    """Raised when no transcript yields a usable TSS enrichment profile."""
