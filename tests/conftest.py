"""Shared fixtures and in-memory fakes for classification tests.

The fakes stand in for Redis, the element view, the LLM classifier and the
suggestion table so orchestration logic runs without infrastructure.
"""
import asyncio
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest

from packages.common.tiered_cache import CacheUnavailableError, LocalTier, TieredCache
from packages.domain.classification.errors import (
    ClassificationError,
    PersistenceError,
    SourceUnavailableError,
)
from packages.domain.classification.orchestrator import ClassificationOrchestrator
from packages.domain.classification.pattern_aggregator import PatternAggregator
from packages.domain.classification.pattern_hasher import PatternHasher
from packages.domain.classification.schemas import (
    ClassificationContext,
    DerivedItem,
    Pattern,
    RawRecord,
    Suggestion,
)


# =============================================================================
# Builders
# =============================================================================

def make_record(
    element_id: int,
    category: str = "Ducts",
    family: Optional[str] = "Rectangular Duct",
    element_type: Optional[str] = "600x300",
    material: Optional[str] = "Galvanised Steel",
    location_type: Optional[str] = "Indoor",
    length: Optional[float] = None,
    width: Optional[float] = None,
    height: Optional[float] = None,
    diameter: Optional[float] = None,
    spec: Optional[str] = None,
    meta_json: Optional[str] = None,
) -> RawRecord:
    def dec(value):
        return None if value is None else Decimal(str(value))

    return RawRecord(
        element_id=element_id,
        external_id=f"ext-{element_id}",
        project_id="proj-1",
        category=category,
        family=family,
        element_type=element_type,
        material=material,
        location_type=location_type,
        spec=spec,
        length_mm=dec(length),
        width_mm=dec(width),
        height_mm=dec(height),
        diameter_mm=dec(diameter),
        meta_json=meta_json,
    )


def make_pattern_records(pattern_count: int, elements_per_pattern: int = 2) -> List[RawRecord]:
    """`pattern_count` distinct patterns (one element type each)"""
    records = []
    element_id = 1
    for p in range(pattern_count):
        for _ in range(elements_per_pattern):
            records.append(make_record(element_id, element_type=f"T{p:04d}", length=1000 + p))
            element_id += 1
    return records


# =============================================================================
# Fakes
# =============================================================================

class FakeSharedTier:
    """In-memory shared tier. Set `unavailable` to simulate a Redis outage."""

    def __init__(self) -> None:
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.leases: Dict[str, str] = {}
        self.unavailable = False
        self.get_many_calls: List[List[str]] = []
        self.set_calls: List[Tuple[str, int]] = []
        self.closed = False
        self._token = 0

    def _check(self) -> None:
        if self.unavailable:
            raise CacheUnavailableError("shared tier down")

    async def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        self._check()
        self.get_many_calls.append(list(keys))
        return {key: self.values.get(key) for key in keys}

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        self.set_calls.append((key, ttl_seconds))

    async def delete(self, key: str) -> None:
        self._check()
        self.values.pop(key, None)

    async def acquire_lease(self, key: str, lease_seconds: float) -> Optional[str]:
        self._check()
        if key in self.leases:
            return None
        self._token += 1
        token = f"token-{self._token}"
        self.leases[key] = token
        return token

    async def release_lease(self, key: str, token: str) -> None:
        self._check()
        if self.leases.get(key) == token:
            del self.leases[key]

    async def lease_exists(self, key: str) -> bool:
        self._check()
        return key in self.leases

    async def count(self) -> int:
        self._check()
        return len(self.values)

    async def close(self) -> None:
        self.closed = True


class FakeElementSource:
    """Serves records from memory, ordered by id like the view query"""

    def __init__(self, records: Iterable[RawRecord] = ()) -> None:
        self.records: Dict[int, RawRecord] = {r.element_id: r for r in records}
        self.fail = False
        self.calls: List[List[int]] = []

    async def iter_elements(self, element_ids: Sequence[int]):
        self.calls.append(list(element_ids))
        if self.fail:
            raise SourceUnavailableError("element view unreachable")
        for element_id in sorted(set(element_ids)):
            record = self.records.get(element_id)
            if record is not None:
                yield record


class FakeClassifier:
    """Deterministic classifier; records calls and peak concurrency"""

    def __init__(self, confidence: float = 0.9, delay: float = 0.0) -> None:
        self.confidence = confidence
        self.delay = delay
        self.fail_keys: Set[str] = set()
        self.crash_keys: Set[str] = set()
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def classify(self, pattern: Pattern, context: ClassificationContext) -> Suggestion:
        self.calls.append(pattern.pattern_key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if pattern.pattern_key in self.fail_keys:
                raise ClassificationError(f"model refused {pattern.pattern_key}")
            if pattern.pattern_key in self.crash_keys:
                raise RuntimeError("unexpected classifier crash")
            return Suggestion(
                pattern_hash="",
                pattern_key=pattern.pattern_key,
                commodity_code=f"COM-{pattern.element_type}",
                pricing_code=f"PRC-{pattern.element_type}",
                derived_items=(
                    DerivedItem(
                        commodity_code="INS-25",
                        quantity_formula="length_mm / 1000",
                        quantity_unit="m",
                    ),
                ),
                reasoning_summary="Rectangular galvanised ductwork",
                confidence=self.confidence,
                ai_cost_usd=Decimal("0.002"),
            )
        finally:
            self.in_flight -= 1


class FakeLedger:
    """Records persisted suggestions; `fail` simulates a database outage"""

    def __init__(self) -> None:
        self.persisted: List[Suggestion] = []
        self.existing: Set[str] = set()
        self.fail = False

    async def persist(self, suggestion: Suggestion) -> None:
        if self.fail:
            raise PersistenceError("suggestion table unavailable")
        self.persisted.append(suggestion)
        self.existing.add(suggestion.pattern_hash)

    async def exists(self, pattern_hash: str) -> bool:
        if self.fail:
            raise PersistenceError("suggestion table unavailable")
        return pattern_hash in self.existing


# =============================================================================
# Fixtures
# =============================================================================

def build_suggestion_cache(shared: Optional[FakeSharedTier] = None, **kwargs) -> TieredCache:
    options = {
        "shared_ttl_seconds": 86400,
        "lease_seconds": 0.5,
        "poll_interval_seconds": 0.01,
    }
    options.update(kwargs)
    return TieredCache(
        LocalTier(max_items=10000, sliding_seconds=1800),
        shared,
        encode=lambda s: s.model_dump_json(),
        decode=Suggestion.model_validate_json,
        **options,
    )


@pytest.fixture
def shared_tier() -> FakeSharedTier:
    return FakeSharedTier()


@pytest.fixture
def cache(shared_tier) -> TieredCache:
    return build_suggestion_cache(shared_tier)


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def hasher() -> PatternHasher:
    return PatternHasher(precision=2)


@pytest.fixture
def make_orchestrator(cache, classifier, ledger, hasher):
    """Factory: orchestrator over the given records, sharing the fixture cache"""

    def _make(records: Iterable[RawRecord] = (), **kwargs) -> ClassificationOrchestrator:
        source = FakeElementSource(records)
        options = {"concurrency": 8, "confidence_threshold": 0.7, "sample_size": 50}
        options.update(kwargs)
        return ClassificationOrchestrator(
            aggregator=PatternAggregator(source),
            hasher=hasher,
            cache=cache,
            classifier=classifier,
            ledger=ledger,
            **options,
        )

    return _make
