"""
Suggestion Ledger - Durable record of advisory suggestions

Suggestions land here with status 'pending' (or 'low_confidence') for the
human review workflow. Approval, rejection and conversion into canonical rules
happen elsewhere; this ledger only writes and answers existence.
"""
import json
from typing import Protocol
from uuid import uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from packages.domain.classification.element_source import SessionFactory
from packages.domain.classification.errors import PersistenceError
from packages.domain.classification.schemas import Suggestion

logger = structlog.get_logger()


class SuggestionLedger(Protocol):
    """Write-only sink for suggestions (plus an existence check)"""

    async def persist(self, suggestion: Suggestion) -> None:
        """Raises PersistenceError if the write fails"""
        ...

    async def exists(self, pattern_hash: str) -> bool:
        """True if a suggestion for this pattern hash is already recorded"""
        ...


class SqlSuggestionLedger:
    """
    Ledger over the bim_classification_suggestions table.

    Usage:
        ledger = SqlSuggestionLedger(manager.session)
        if not await ledger.exists(suggestion.pattern_hash):
            await ledger.persist(suggestion)
    """

    _INSERT = text("""
        INSERT INTO bim_classification_suggestions (
            id,
            pattern_hash,
            pattern_key,
            element_count,
            suggested_commodity_code,
            suggested_pricing_code,
            derived_items_json,
            reasoning_summary,
            confidence,
            status,
            ai_cost_usd,
            created_at
        ) VALUES (
            :id,
            :pattern_hash,
            :pattern_key,
            :element_count,
            :commodity_code,
            :pricing_code,
            :derived_items_json,
            :reasoning_summary,
            :confidence,
            :status,
            :ai_cost_usd,
            :created_at
        )
    """)

    _EXISTS = text("""
        SELECT 1
        FROM bim_classification_suggestions
        WHERE pattern_hash = :pattern_hash
        LIMIT 1
    """)

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def persist(self, suggestion: Suggestion) -> None:
        derived_items_json = json.dumps(
            [item.model_dump(mode="json") for item in suggestion.derived_items]
        )

        try:
            async with self.session_factory() as session:
                await session.execute(self._INSERT, {
                    "id": uuid4(),
                    "pattern_hash": suggestion.pattern_hash,
                    "pattern_key": suggestion.pattern_key,
                    "element_count": suggestion.element_count,
                    "commodity_code": suggestion.commodity_code,
                    "pricing_code": suggestion.pricing_code,
                    "derived_items_json": derived_items_json,
                    "reasoning_summary": suggestion.reasoning_summary,
                    "confidence": suggestion.confidence,
                    "status": suggestion.status.value,
                    "ai_cost_usd": suggestion.ai_cost_usd,
                    "created_at": suggestion.created_at,
                })
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(
                f"Failed to persist suggestion {suggestion.pattern_hash}: {e}"
            ) from e

        logger.info("suggestion_persisted",
                    pattern_hash=suggestion.pattern_hash,
                    pattern_key=suggestion.pattern_key,
                    status=suggestion.status.value)

    async def exists(self, pattern_hash: str) -> bool:
        try:
            async with self.session_factory() as session:
                result = await session.execute(self._EXISTS, {"pattern_hash": pattern_hash})
                return result.first() is not None
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Failed to query suggestion {pattern_hash}: {e}") from e
