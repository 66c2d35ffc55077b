"""
Base errors shared by the infrastructure and domain layers

Lives in packages/common so the cache tier can raise a core error without
importing from packages/domain.
"""


class ClassificationCoreError(Exception):
    """Base class for all classification core errors"""


class CacheUnavailableError(ClassificationCoreError):
    """The shared cache tier could not be reached. Callers degrade to a miss."""
