"""
Pattern Hasher - Content hash that identifies a pattern across batches

Same grouping fields + same quantised dimension stats => same hash, in any
process, on any machine. The hash is the cache key for suggestions, so any
change to the canonical form below must bump HASH_VERSION.
"""
import hashlib
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from packages.domain.classification.schemas import DIMENSIONS, Pattern

HASH_VERSION = "pattern-v1"

_ABSENT = "~"


class PatternHasher:
    """
    SHA-256 over a length-prefixed canonical form of the pattern.

    Length prefixes keep ("AB", "C") and ("A", "BC") apart without escaping.
    """

    def __init__(self, precision: int = 2):
        if precision < 0:
            raise ValueError(f"precision must be >= 0, got {precision}")
        self.precision = precision
        self._quantum = Decimal(1).scaleb(-precision)

    def hash(self, pattern: Pattern) -> str:
        canonical = self.canonical_form(pattern)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def canonical_form(self, pattern: Pattern) -> str:
        parts: List[str] = [HASH_VERSION]
        parts.extend(pattern.grouping_key)

        stats = pattern.dimension_stats
        for name in DIMENSIONS:
            dim_range = stats.get(name) if stats is not None else None
            if dim_range is None:
                parts.extend([_ABSENT] * 3)
            else:
                parts.extend(self._format(v) for v in (dim_range.min, dim_range.max, dim_range.avg))

        return "".join(f"{len(part)}:{part}" for part in parts)

    def _format(self, value: Optional[Decimal]) -> str:
        if value is None:
            return _ABSENT
        quantised = Decimal(value).quantize(self._quantum, rounding=ROUND_HALF_UP)
        if quantised.is_zero():
            # -0.00 and 0.00 must hash the same
            quantised = abs(quantised)
        return f"{quantised:f}"
