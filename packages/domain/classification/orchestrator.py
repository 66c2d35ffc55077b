"""
Classification Orchestrator - Drives one batch from element ids to suggestions

Batch flow:
1. AGGREGATING   - fold elements into patterns (O(N) rows → O(P) patterns)
2. LOOKING_UP    - hash every pattern, one tiered-cache lookup for all hashes
3. CLASSIFYING   - classify misses only, bounded concurrency, single-flight per hash
4. FINALIZING    - persist new suggestions, assemble the BatchResult
5. DONE

Example (100K elements):
- 523 patterns, 420 already cached → 103 classifier calls instead of 100,000
- cache_hit_rate = 420 / 523 ≈ 0.803

Failure policy:
- Element source down → the batch fails (SourceUnavailableError)
- Classifier error on one pattern → that pattern is FAILED, never cached
- Cache or ledger trouble → logged, the batch carries on
"""
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional
from uuid import uuid4

import structlog

from packages.common.database import DatabaseSessionManager
from packages.common.tiered_cache import CacheStats, TieredCache
from packages.domain.classification.errors import (
    ClassificationError,
    EmptyInputError,
    PersistenceError,
    SourceUnavailableError,
)
from packages.domain.classification.pattern_aggregator import DEFAULT_SAMPLE_SIZE, PatternAggregator
from packages.domain.classification.pattern_classifier import PatternClassifier
from packages.domain.classification.pattern_hasher import PatternHasher
from packages.domain.classification.schemas import (
    BatchResult,
    ClassificationContext,
    Pattern,
    Suggestion,
    SuggestionStatus,
)
from packages.domain.classification.suggestion_ledger import SuggestionLedger

logger = structlog.get_logger()


class BatchState(str, Enum):
    AGGREGATING = "aggregating"
    LOOKING_UP = "looking_up"
    CLASSIFYING = "classifying"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class _Resolution:
    """How one cache-miss pattern was resolved"""
    suggestion: Suggestion
    computed: bool  # True if this batch called the classifier for it


class ClassificationOrchestrator:
    """
    Pattern-based batch classification with tiered caching.

    Usage:
        orchestrator = create_orchestrator()
        result = await orchestrator.classify_batch(element_ids)
        print(f"{result.newly_classified} classifier calls, hit rate {result.cache_hit_rate:.1%}")
    """

    def __init__(
        self,
        aggregator: PatternAggregator,
        hasher: PatternHasher,
        cache: TieredCache[Suggestion],
        classifier: PatternClassifier,
        ledger: Optional[SuggestionLedger] = None,
        *,
        concurrency: int = 8,
        confidence_threshold: float = 0.7,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        session_manager: Optional[DatabaseSessionManager] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.aggregator = aggregator
        self.hasher = hasher
        self.cache = cache
        self.classifier = classifier
        self.ledger = ledger
        self.confidence_threshold = confidence_threshold
        self.sample_size = sample_size
        self.session_manager = session_manager

        # Shared by every batch running on this orchestrator
        self._classifier_slots = asyncio.Semaphore(concurrency)

    async def classify_batch(
        self,
        element_ids: Iterable[int],
        force_refresh: bool = False,
        project_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Classify a batch of elements via their patterns.

        Args:
            element_ids: Elements to classify (duplicates ignored)
            force_refresh: Bypass cached suggestions (results are still written back)
            project_id: Optional project scope, passed to the classifier

        Returns:
            BatchResult with per-pattern suggestions and hash → element ids mapping

        Raises:
            SourceUnavailableError: Element source couldn't be queried
        """
        batch_id = str(uuid4())
        log = logger.bind(batch_id=batch_id)
        requested = list(dict.fromkeys(element_ids))

        log.info("batch_started",
                 element_count=len(requested),
                 force_refresh=force_refresh,
                 project_id=project_id)

        # ---- aggregating ----
        self._transition(log, BatchState.AGGREGATING)
        try:
            patterns = await self.aggregator.get_patterns(requested, sample_size=self.sample_size)
        except EmptyInputError:
            patterns = []
        except SourceUnavailableError as e:
            log.error("batch_failed", error=str(e))
            raise

        if not patterns:
            self._transition(log, BatchState.DONE)
            log.info("batch_completed", total_patterns=0)
            return BatchResult(batch_id=batch_id, total_elements=len(requested))

        hashes = [self.hasher.hash(pattern) for pattern in patterns]

        # ---- looking up ----
        self._transition(log, BatchState.LOOKING_UP)
        if force_refresh:
            found = {}
        else:
            found = await self.cache.get_many(hashes)

        misses = [
            (pattern, pattern_hash)
            for pattern, pattern_hash in zip(patterns, hashes)
            if found.get(pattern_hash) is None
        ]

        log.info("cache_lookup_complete",
                 total_patterns=len(patterns),
                 cache_hits=len(patterns) - len(misses),
                 cache_misses=len(misses))

        # ---- classifying ----
        self._transition(log, BatchState.CLASSIFYING)
        context = ClassificationContext(
            batch_id=batch_id,
            project_id=project_id,
            force_refresh=force_refresh,
        )
        resolutions = await asyncio.gather(*[
            self._resolve(pattern, pattern_hash, context, log)
            for pattern, pattern_hash in misses
        ])
        resolved = {
            pattern_hash: resolution
            for (_, pattern_hash), resolution in zip(misses, resolutions)
        }

        # ---- finalizing ----
        self._transition(log, BatchState.FINALIZING)
        suggestions: List[Suggestion] = []
        cached_patterns = 0
        newly_classified = 0
        failed_patterns = 0
        total_cost = Decimal("0")

        for pattern_hash in hashes:
            resolution = resolved.get(pattern_hash)
            if resolution is None:
                suggestions.append(found[pattern_hash])
                cached_patterns += 1
                continue

            suggestion = resolution.suggestion
            suggestions.append(suggestion)
            if suggestion.status == SuggestionStatus.FAILED:
                failed_patterns += 1
            elif resolution.computed:
                newly_classified += 1
                total_cost += suggestion.ai_cost_usd or Decimal("0")
            else:
                # Another caller classified it while we waited
                cached_patterns += 1

        result = BatchResult(
            batch_id=batch_id,
            total_elements=len(requested),
            total_patterns=len(patterns),
            cached_patterns=cached_patterns,
            newly_classified=newly_classified,
            failed_patterns=failed_patterns,
            cache_hit_rate=BatchResult.hit_rate(cached_patterns, len(patterns)),
            suggestions=suggestions,
            pattern_mapping={
                pattern_hash: list(pattern.element_ids)
                for pattern, pattern_hash in zip(patterns, hashes)
            },
            total_ai_cost_usd=total_cost,
        )

        self._transition(log, BatchState.DONE)
        log.info("batch_completed",
                 total_elements=result.total_elements,
                 total_patterns=result.total_patterns,
                 cached_patterns=result.cached_patterns,
                 newly_classified=result.newly_classified,
                 failed_patterns=result.failed_patterns,
                 cache_hit_rate=round(result.cache_hit_rate, 4),
                 total_ai_cost_usd=float(result.total_ai_cost_usd))

        return result

    async def _resolve(
        self,
        pattern: Pattern,
        pattern_hash: str,
        context: ClassificationContext,
        log,
    ) -> _Resolution:
        """Classify one missed pattern through the cache's single-flight path"""
        computed = False

        async def compute() -> Suggestion:
            nonlocal computed
            suggestion = await self._classify(pattern, pattern_hash, context)
            computed = True
            return suggestion

        try:
            suggestion = await self.cache.get_or_compute(
                pattern_hash,
                compute,
                refresh=context.force_refresh,
            )
        except ClassificationError as e:
            log.warning("pattern_classification_failed",
                        pattern_hash=pattern_hash,
                        pattern_key=pattern.pattern_key,
                        error=str(e))
            return _Resolution(
                suggestion=Suggestion.failed(
                    pattern_hash=pattern_hash,
                    pattern_key=pattern.pattern_key,
                    element_count=pattern.element_count,
                    error=str(e),
                ),
                computed=False,
            )

        if computed:
            await self._record(suggestion, context, log)

        return _Resolution(suggestion=suggestion, computed=computed)

    async def _classify(
        self,
        pattern: Pattern,
        pattern_hash: str,
        context: ClassificationContext,
    ) -> Suggestion:
        """
        One classifier call, bounded by the shared concurrency limit.

        Raises:
            ClassificationError: For any classifier failure (never cached)
        """
        async with self._classifier_slots:
            try:
                suggestion = await self.classifier.classify(pattern, context)
            except ClassificationError as e:
                e.pattern_hash = e.pattern_hash or pattern_hash
                raise
            except Exception as e:
                raise ClassificationError(
                    f"Classifier raised {type(e).__name__}: {e}",
                    pattern_hash=pattern_hash,
                ) from e

        if suggestion.status == SuggestionStatus.FAILED:
            raise ClassificationError(
                suggestion.error or "Classifier returned a failed suggestion",
                pattern_hash=pattern_hash,
            )

        stamped = suggestion.model_copy(update={
            "pattern_hash": pattern_hash,
            "pattern_key": pattern.pattern_key,
            "element_count": pattern.element_count,
        })
        return stamped.with_confidence_floor(self.confidence_threshold)

    async def _record(self, suggestion: Suggestion, context: ClassificationContext, log) -> None:
        """Forward a newly classified suggestion to the ledger; failures are non-fatal"""
        if self.ledger is None:
            return

        try:
            if not context.force_refresh and await self.ledger.exists(suggestion.pattern_hash):
                log.debug("suggestion_already_recorded", pattern_hash=suggestion.pattern_hash)
                return
            await self.ledger.persist(suggestion)
        except PersistenceError as e:
            log.warning("suggestion_persist_failed",
                        pattern_hash=suggestion.pattern_hash,
                        error=str(e))

    @staticmethod
    def _transition(log, state: BatchState) -> None:
        log.debug("batch_state_changed", state=state.value)

    async def cache_stats(self) -> CacheStats:
        return await self.cache.stats()

    async def invalidate(self, pattern_hash: str) -> None:
        """
        Drop a cached suggestion from both tiers.

        Raises:
            CacheUnavailableError: Shared tier unreachable
        """
        await self.cache.delete(pattern_hash)

    async def close(self) -> None:
        """Release the Redis pool and the database engine"""
        try:
            await self.cache.close()
        finally:
            if self.session_manager is not None:
                await self.session_manager.close()
