"""
Pattern Aggregator - Folds raw element records into statistical patterns

Elements sharing (category, family, type, material, location_type) are one
pattern. Per pattern we keep:
- element count
- per-dimension min/max/avg over the records that supply that dimension
  (avg is an exact Decimal mean over contributing records)
- the N smallest element ids as samples (deterministic: same input, same samples)
- every contributing element id, for result attribution

Records are streamed; statistics and samples are folded incrementally so a
pattern of millions of elements never has to be materialized.
"""
import heapq
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from packages.domain.classification.element_source import ElementSource
from packages.domain.classification.errors import EmptyInputError
from packages.domain.classification.schemas import (
    DIMENSIONS,
    DimensionRange,
    DimensionStats,
    GroupingKey,
    Pattern,
    RawRecord,
)

logger = structlog.get_logger()

DEFAULT_SAMPLE_SIZE = 50


@dataclass
class _DimensionAccumulator:
    """Running min/max/sum for one dimension"""
    count: int = 0
    total: Decimal = Decimal("0")
    minimum: Optional[Decimal] = None
    maximum: Optional[Decimal] = None

    def add(self, value: Decimal) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def to_range(self) -> Optional[DimensionRange]:
        if self.count == 0:
            return None
        return DimensionRange(min=self.minimum, max=self.maximum, avg=self.total / self.count)


@dataclass
class _PatternAccumulator:
    grouping_key: GroupingKey
    sample_size: int
    element_count: int = 0
    element_ids: List[int] = field(default_factory=list)
    dimensions: Dict[str, _DimensionAccumulator] = field(
        default_factory=lambda: {name: _DimensionAccumulator() for name in DIMENSIONS}
    )
    # Max-heap (negated ids) of the smallest `sample_size` element ids seen so far.
    # TODO: stratify samples across dimension ranges so wide patterns show their extremes
    samples: List[Tuple[int, RawRecord]] = field(default_factory=list)

    def add(self, record: RawRecord) -> None:
        self.element_count += 1
        self.element_ids.append(record.element_id)

        for name, accumulator in self.dimensions.items():
            value = record.dimension(name)
            if value is not None:
                accumulator.add(value)

        entry = (-record.element_id, record)
        if len(self.samples) < self.sample_size:
            heapq.heappush(self.samples, entry)
        elif record.element_id < -self.samples[0][0]:
            heapq.heapreplace(self.samples, entry)

    def to_pattern(self) -> Pattern:
        ranges = {name: acc.to_range() for name, acc in self.dimensions.items()}
        dimension_stats = DimensionStats(**ranges) if any(ranges.values()) else None

        category, family, element_type, material, location_type = self.grouping_key
        return Pattern(
            category=category,
            family=family,
            element_type=element_type,
            material=material,
            location_type=location_type,
            element_count=self.element_count,
            dimension_stats=dimension_stats,
            sample_elements=tuple(record for _, record in sorted(self.samples, key=lambda e: -e[0])),
            element_ids=tuple(sorted(self.element_ids)),
        )


class PatternAggregator:
    """
    Groups element records into patterns.

    Usage:
        aggregator = PatternAggregator(SqlElementSource(manager.session))
        patterns = await aggregator.get_patterns(element_ids, sample_size=50)
    """

    def __init__(self, source: ElementSource):
        self.source = source

    async def get_patterns(
        self,
        element_ids: Iterable[int],
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> List[Pattern]:
        """
        Aggregate the given elements into patterns.

        Args:
            element_ids: Element ids to cover (duplicates are ignored)
            sample_size: Max sample elements per pattern

        Returns:
            Patterns sorted by grouping key; every found id is in exactly one pattern

        Raises:
            EmptyInputError: No ids supplied
            SourceUnavailableError: Element source can't be queried
        """
        if sample_size < 1:
            raise ValueError(f"sample_size must be >= 1, got {sample_size}")

        requested = list(dict.fromkeys(element_ids))
        if not requested:
            raise EmptyInputError("No element ids supplied")

        pending = set(requested)
        groups: Dict[GroupingKey, _PatternAccumulator] = {}
        skipped = 0

        async for record in self.source.iter_elements(requested):
            if record.element_id not in pending:
                # Not requested, or already folded in
                skipped += 1
                continue
            pending.discard(record.element_id)

            key = record.grouping_key
            accumulator = groups.get(key)
            if accumulator is None:
                accumulator = groups[key] = _PatternAccumulator(key, sample_size)
            accumulator.add(record)

        if pending:
            logger.warning("elements_not_found",
                           missing_count=len(pending),
                           sample_ids=sorted(pending)[:10])
        if skipped:
            logger.warning("elements_skipped", skipped_count=skipped)

        patterns = [groups[key].to_pattern() for key in sorted(groups)]

        logger.info("patterns_aggregated",
                    element_count=len(requested),
                    found_count=len(requested) - len(pending),
                    pattern_count=len(patterns))

        return patterns
