"""
Wiring for the production classification graph

Settings → structlog, Redis shared tier + local tier, SQL element source and
suggestion ledger over one DatabaseSessionManager, Claude classifier.
The orchestrator owns the session manager and disposes it in close().
"""
from typing import Optional

import structlog

from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseSessionManager
from packages.common.logging_config import configure_logging
from packages.common.tiered_cache import LocalTier, RedisSharedTier, TieredCache
from packages.domain.classification.element_source import SqlElementSource
from packages.domain.classification.orchestrator import ClassificationOrchestrator
from packages.domain.classification.pattern_aggregator import PatternAggregator
from packages.domain.classification.pattern_classifier import ClaudePatternClassifier
from packages.domain.classification.pattern_hasher import PatternHasher
from packages.domain.classification.schemas import Suggestion
from packages.domain.classification.suggestion_ledger import SqlSuggestionLedger

logger = structlog.get_logger()


def _encode_suggestion(suggestion: Suggestion) -> str:
    return suggestion.model_dump_json()


def build_cache(settings: Settings) -> TieredCache[Suggestion]:
    """Tiered suggestion cache; local-only when REDIS_URL is empty"""
    shared = None
    if settings.redis_url:
        shared = RedisSharedTier.from_url(settings.redis_url, key_prefix=settings.shared_cache_key_prefix)
    else:
        logger.warning("shared_cache_disabled", message="REDIS_URL empty, using local tier only")

    return TieredCache(
        LocalTier(
            max_items=settings.local_cache_max_items,
            sliding_seconds=settings.local_cache_sliding_seconds,
        ),
        shared,
        encode=_encode_suggestion,
        decode=Suggestion.model_validate_json,
        shared_ttl_seconds=settings.shared_cache_ttl_seconds,
        lease_seconds=settings.shared_cache_lease_seconds,
        poll_interval_seconds=settings.shared_cache_poll_interval_seconds,
    )


def create_orchestrator(settings: Optional[Settings] = None) -> ClassificationOrchestrator:
    """
    Build a ClassificationOrchestrator from settings (environment by default).

    Nothing connects here: the database engine and Redis pool are created
    lazily on first use.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    session_manager = DatabaseSessionManager(settings)

    orchestrator = ClassificationOrchestrator(
        aggregator=PatternAggregator(
            SqlElementSource(session_manager.session, chunk_size=settings.element_query_chunk_size)
        ),
        hasher=PatternHasher(precision=settings.pattern_hash_precision),
        cache=build_cache(settings),
        classifier=ClaudePatternClassifier(
            api_key=settings.anthropic_api_key,
            model=settings.classification_model,
        ),
        ledger=SqlSuggestionLedger(session_manager.session),
        concurrency=settings.classification_concurrency,
        confidence_threshold=settings.classification_confidence_threshold,
        sample_size=settings.classification_sample_size,
        session_manager=session_manager,
    )

    logger.info("classification_orchestrator_created",
                environment=settings.environment,
                model=settings.classification_model,
                shared_cache=bool(settings.redis_url),
                concurrency=settings.classification_concurrency)

    return orchestrator
