from __future__ import annotations


class ReviewError(RuntimeError):
    """Base class for every error the review engine reports to its callers."""


class RepositoryStateError(ReviewError):
    """The repository cannot produce a diff (no repo, no commits, bad base ref)."""


class ValidationError(ReviewError, ValueError):
    """Malformed input such as an inverted line range or an empty body."""


class NotFoundError(ReviewError, LookupError):
    """Unknown comment or reply id."""


class StoreUnavailableError(ReviewError):
    """The store could not be opened or its write lock was not granted in time."""
