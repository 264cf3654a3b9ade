"""Chat orchestration: validation, retrieval, generation and persistence.

Typed pipeline errors are converted into a chat-shaped error payload here so
callers always receive a conversational reply.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from heartbridge.core.ai_constants import APOLOGY_TEMPLATE, EMPTY_QUERY_MESSAGE
from heartbridge.core.errors import EmptyQuery, HeartBridgeError
from heartbridge.knowledge.models import CamelModel, RetrievalCandidate
from heartbridge.knowledge.retriever import RetrievalEngine
from heartbridge.models.chat import ChatTurn
from heartbridge.observability import MetricsBackend
from heartbridge.services.generator import AnswerGenerator

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUERY_CHARS = 2000


@dataclass(frozen=True)
class CallerIdentity:
    """Optional identity forwarded by the gateway."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class SourceItem(CamelModel):
    """A cited knowledge unit as shown to the caller."""

    content: str
    similarity: float
    category: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: RetrievalCandidate) -> "SourceItem":
        return cls(
            content=candidate.content,
            similarity=round(candidate.score, 4),
            category=candidate.category,
        )


class ChatReply(CamelModel):
    """Successful chat response."""

    response: str
    sources: list[SourceItem] = Field(default_factory=list)
    retrieved_count: int = 0
    processing_time: int = Field(0, description="Milliseconds")
    session_id: Optional[str] = None


class ChatErrorReply(CamelModel):
    """Error response that still carries a conversational message."""

    error: str
    response: str


class ChatService:
    """Per-request orchestration of retrieval and generation."""

    def __init__(
        self,
        engine: RetrievalEngine,
        generator: AnswerGenerator,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        metrics: MetricsBackend | None = None,
        max_query_chars: int = DEFAULT_MAX_QUERY_CHARS,
    ) -> None:
        self.engine = engine
        self.generator = generator
        self.session_factory = session_factory
        self.metrics = metrics
        self.max_query_chars = max_query_chars

    def clean_query(self, message: Any) -> str:
        """Trim and cap the message.

        Raises:
            EmptyQuery: If nothing but whitespace remains.
        """
        if not isinstance(message, str):
            raise EmptyQuery("Invalid message input")
        cleaned = message.strip()[: self.max_query_chars]
        if not cleaned:
            raise EmptyQuery()
        return cleaned

    @staticmethod
    def clean_filter(value: Any) -> Optional[str]:
        """Return a usable filter value; anything but a string means no filter."""
        if value is None or isinstance(value, str):
            return value
        logger.warning(f"Ignoring non-string chat filter: {value!r}")
        return None

    async def ask(
        self,
        message: Any,
        category: Any = None,
        importance: Any = None,
        identity: CallerIdentity | None = None,
    ) -> ChatReply:
        """Answer one question.

        Raises:
            EmptyQuery: Before any external call, for blank input.
            HeartBridgeError: Fatal pipeline errors (embedding, retrieval,
                generation).
        """
        started_at = time.perf_counter()
        query = self.clean_query(message)
        identity = identity or CallerIdentity()
        session_id = identity.session_id or new_session_id()

        outcome = await self.engine.retrieve(
            query,
            category=self.clean_filter(category),
            importance=self.clean_filter(importance),
        )
        response = await self.generator.generate(query, outcome, started_at=started_at)

        sources = [SourceItem.from_candidate(c) for c in outcome.candidates]
        processing_time = int((time.perf_counter() - started_at) * 1000)

        if identity.user_id:
            await self._persist_turn(
                ChatTurn(
                    user_id=identity.user_id,
                    session_id=session_id,
                    query=query,
                    response=response,
                    sources=[s.model_dump() for s in sources],
                    retrieved_count=len(sources),
                    processing_time_ms=processing_time,
                )
            )

        return ChatReply(
            response=response,
            sources=sources,
            retrieved_count=len(sources),
            processing_time=processing_time,
            session_id=session_id,
        )

    async def handle(
        self,
        message: Any,
        category: Any = None,
        importance: Any = None,
        identity: CallerIdentity | None = None,
    ) -> tuple[int, ChatReply | ChatErrorReply]:
        """Boundary wrapper around ``ask``: never raises.

        Returns:
            ``(status_code, body)``; 200 with a reply, 400 for empty input,
            500 with an apology for any other failure.
        """
        started_at = time.perf_counter()
        try:
            reply = await self.ask(message, category, importance, identity)
        except EmptyQuery as e:
            self._observe("rejected", 0, started_at)
            return 400, ChatErrorReply(error=e.detail, response=EMPTY_QUERY_MESSAGE)
        except HeartBridgeError as e:
            logger.error(f"Chat pipeline failed: {type(e).__name__}: {e.detail}", exc_info=True)
            self._observe("error", 0, started_at)
            return 500, ChatErrorReply(
                error=e.detail,
                response=APOLOGY_TEMPLATE.format(detail=e.detail),
            )
        except Exception as e:
            logger.exception("Unexpected chat pipeline error")
            self._observe("error", 0, started_at)
            detail = str(e) or type(e).__name__
            return 500, ChatErrorReply(
                error=detail,
                response=APOLOGY_TEMPLATE.format(detail=detail),
            )

        self._observe("success", reply.retrieved_count, started_at)
        return 200, reply

    async def history(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[ChatTurn]:
        """Return persisted turns for a user, newest first."""
        if self.session_factory is None:
            return []
        query = select(ChatTurn).where(ChatTurn.user_id == user_id)
        if session_id:
            query = query.where(ChatTurn.session_id == session_id)
        query = query.order_by(ChatTurn.created_at.desc(), ChatTurn.id.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _persist_turn(self, turn: ChatTurn) -> None:
        if self.session_factory is None:
            return
        try:
            async with self.session_factory() as session:
                session.add(turn)
                await session.commit()
        except Exception as e:
            logger.warning(f"Failed to save chat history for session {turn.session_id}: {e}")

    def _observe(self, outcome: str, retrieved_count: int, started_at: float) -> None:
        if self.metrics is not None:
            duration_ms = (time.perf_counter() - started_at) * 1000
            self.metrics.observe_chat(outcome, retrieved_count, duration_ms)
