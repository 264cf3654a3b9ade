"""Query log telemetry. Writes never fail the request."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heartbridge.core.errors import TelemetryWriteFailed
from heartbridge.models.chat import RAGQueryLog

logger = logging.getLogger(__name__)


@dataclass
class QueryLogEntry:
    query: str
    retrieved_units_count: int
    response: Optional[str]
    processing_time_ms: int


class TelemetrySink(Protocol):
    async def record(self, entry: QueryLogEntry) -> None:
        ...


class QueryLogSink:
    """Appends ``rag_query_logs`` rows using a dedicated session per write."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def record(self, entry: QueryLogEntry) -> None:
        """Write one entry; failures are logged and swallowed."""
        try:
            await self._write(entry)
        except TelemetryWriteFailed as e:
            logger.warning(f"Telemetry write failed: {e.detail}")

    async def _write(self, entry: QueryLogEntry) -> None:
        try:
            await asyncio.wait_for(self._insert(entry), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TelemetryWriteFailed("query log write timed out") from e
        except Exception as e:
            raise TelemetryWriteFailed(str(e)) from e

    async def _insert(self, entry: QueryLogEntry) -> None:
        async with self.session_factory() as session:
            session.add(
                RAGQueryLog(
                    query=entry.query,
                    retrieved_units_count=entry.retrieved_units_count,
                    response=entry.response,
                    processing_time_ms=entry.processing_time_ms,
                )
            )
            await session.commit()
