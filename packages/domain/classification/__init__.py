"""
Classification Module - Pattern-based BIM element classification

Instead of classifying 100M elements one by one:
1. Aggregate: group near-identical elements into patterns (10K-100K)
2. Hash: stable content hash per pattern
3. Look up: local LRU → shared Redis tier (24h TTL)
4. Classify: LLM call for cache misses only, bounded concurrency
5. Record: advisory suggestions go to the ledger for human review

Example flow:
- 100,000 duct/pipe elements → 523 patterns
- 420 patterns cached → 103 LLM calls (hit rate ≈ 80%)
- Suggestions never touch canonical classification; a reviewer approves them
"""

from packages.domain.classification.errors import (
    CacheUnavailableError,
    ClassificationCoreError,
    ClassificationError,
    EmptyInputError,
    PersistenceError,
    SourceUnavailableError,
)
from packages.domain.classification.orchestrator import (
    BatchState,
    ClassificationOrchestrator,
)
from packages.domain.classification.pattern_aggregator import PatternAggregator
from packages.domain.classification.pattern_hasher import PatternHasher
from packages.domain.classification.schemas import (
    BatchResult,
    ClassificationContext,
    DerivedItem,
    DimensionRange,
    DimensionStats,
    Pattern,
    RawRecord,
    Suggestion,
    SuggestionStatus,
)

__all__ = [
    'BatchResult',
    'BatchState',
    'CacheUnavailableError',
    'ClassificationContext',
    'ClassificationCoreError',
    'ClassificationError',
    'ClassificationOrchestrator',
    'DerivedItem',
    'DimensionRange',
    'DimensionStats',
    'EmptyInputError',
    'Pattern',
    'PatternAggregator',
    'PatternHasher',
    'PersistenceError',
    'RawRecord',
    'SourceUnavailableError',
    'Suggestion',
    'SuggestionStatus',
]
