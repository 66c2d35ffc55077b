"""
Element Source - Streams raw BIM element snapshots for aggregation

Backed by the `bim_element_patterns` view (pre-aggregated, clustered on
category/family/type/material/location_type/id). Ids are queried in chunks so
that neither the SQL statement nor the process ever holds 100M rows at once.
"""
from contextlib import AbstractAsyncContextManager
from typing import AsyncIterator, Callable, Protocol, Sequence

import structlog
from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packages.domain.classification.errors import SourceUnavailableError
from packages.domain.classification.schemas import RawRecord

logger = structlog.get_logger()

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class ElementSource(Protocol):
    """Read-only source of element snapshots"""

    def iter_elements(self, element_ids: Sequence[int]) -> AsyncIterator[RawRecord]:
        """
        Yield the records for the given ids (ids the source doesn't know are skipped).

        Raises:
            SourceUnavailableError: If the source can't be queried
        """
        ...


class SqlElementSource:
    """
    Element source over the pattern view.

    Usage:
        source = SqlElementSource(manager.session)
        async for record in source.iter_elements([1, 2, 3]):
            ...
    """

    _QUERY = text("""
        SELECT
            id,
            external_id,
            project_id,
            category,
            family,
            element_type,
            material,
            location_type,
            spec,
            length_mm,
            width_mm,
            height_mm,
            diameter_mm,
            meta_json
        FROM bim_element_patterns
        WHERE id IN :ids
        ORDER BY id
    """).bindparams(bindparam("ids", expanding=True))

    def __init__(self, session_factory: SessionFactory, chunk_size: int = 5000):
        self.session_factory = session_factory
        self.chunk_size = chunk_size

    async def iter_elements(self, element_ids: Sequence[int]) -> AsyncIterator[RawRecord]:
        for start in range(0, len(element_ids), self.chunk_size):
            chunk = list(element_ids[start:start + self.chunk_size])
            rows = await self._fetch_chunk(chunk)
            for row in rows:
                yield self._to_record(row)

    async def _fetch_chunk(self, chunk: list[int]):
        try:
            async with self.session_factory() as session:
                result = await session.execute(self._QUERY, {"ids": chunk})
                return result.fetchall()
        except (SQLAlchemyError, OSError) as e:
            logger.error("element_source_query_failed",
                         chunk_size=len(chunk),
                         error=str(e))
            raise SourceUnavailableError(f"Element view query failed: {e}") from e

    @staticmethod
    def _to_record(row) -> RawRecord:
        data = dict(row._mapping)
        data["element_id"] = data.pop("id")
        if data.get("project_id") is not None:
            data["project_id"] = str(data["project_id"])
        return RawRecord(**data)
