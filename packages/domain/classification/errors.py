"""
Error taxonomy for pattern classification

Propagation policy:
- Source-of-truth failures (element source) abort the batch
- Infrastructure failures (cache, ledger) never abort a batch
- Classifier failures are isolated per pattern and never cached
"""
from typing import Optional

from packages.common.errors import CacheUnavailableError, ClassificationCoreError


class EmptyInputError(ClassificationCoreError):
    """No element ids were supplied. Callers treat this as an empty success."""


class SourceUnavailableError(ClassificationCoreError):
    """The element source could not be queried. Fatal to the batch."""


class ClassificationError(ClassificationCoreError):
    """The external classifier failed for one pattern."""

    def __init__(self, message: str, pattern_hash: Optional[str] = None):
        super().__init__(message)
        self.pattern_hash = pattern_hash


class PersistenceError(ClassificationCoreError):
    """A suggestion could not be written to the ledger. Logged, non-fatal."""


__all__ = [
    "ClassificationCoreError",
    "EmptyInputError",
    "SourceUnavailableError",
    "CacheUnavailableError",
    "ClassificationError",
    "PersistenceError",
]
