"""Tests for the chat session service."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from heartbridge.core.ai_constants import EMPTY_QUERY_MESSAGE
from heartbridge.core.errors import EmbeddingUnavailable, EmptyQuery, GenerationFailed
from heartbridge.core.config import RetrievalPolicy
from heartbridge.knowledge.retriever import RetrievalEngine
from heartbridge.models.chat import ChatTurn, RAGQueryLog
from heartbridge.observability import MetricsCollector
from heartbridge.services.chat import CallerIdentity, ChatErrorReply, ChatReply, ChatService
from heartbridge.services.generator import AnswerGenerator
from heartbridge.services.telemetry import QueryLogSink
from tests.fakes import FakeStore, make_candidate


@pytest.fixture
def store() -> FakeStore:
    return FakeStore(vector_hits=[make_candidate("a", 0.82, content="Stay calm.", category="behavior")])


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def service(
    store,
    mock_embedder,
    mock_understander,
    mock_model_client,
    settings,
    session_factory,
    metrics,
) -> ChatService:
    engine = RetrievalEngine(
        store=store,
        embedder=mock_embedder,
        understander=mock_understander,
        policy=RetrievalPolicy(),
        timeout_seconds=1.0,
    )
    generator = AnswerGenerator(
        mock_model_client,
        telemetry=QueryLogSink(session_factory),
        settings=settings,
    )
    return ChatService(
        engine,
        generator,
        session_factory=session_factory,
        metrics=metrics,
        max_query_chars=settings.max_query_chars,
    )


class TestAsk:
    """Tests for the raising ``ask`` operation."""

    async def test_grounded_answer(self, service: ChatService):
        reply = await service.ask("my child has meltdowns")

        assert reply.response == "Here is some guidance."
        assert reply.retrieved_count == 1
        assert reply.sources[0].content == "Stay calm."
        assert reply.sources[0].similarity == pytest.approx(0.82)
        assert reply.sources[0].category == "behavior"
        assert reply.processing_time >= 0
        assert reply.session_id.startswith("session_")

    async def test_ungrounded_answer_has_no_sources(self, service: ChatService, store: FakeStore):
        store.vector_hits = [make_candidate("a", 0.4)]

        reply = await service.ask("what about the weather")

        assert reply.retrieved_count == 0
        assert reply.sources == []

    @pytest.mark.parametrize("message", ["", "   ", "\n\t", None, 42])
    async def test_empty_query_rejected_before_network(
        self, service: ChatService, mock_embedder, mock_understander, mock_model_client, message
    ):
        with pytest.raises(EmptyQuery):
            await service.ask(message)

        mock_embedder.embed.assert_not_awaited()
        mock_understander.understand.assert_not_awaited()
        mock_model_client.complete.assert_not_awaited()

    async def test_query_trimmed_and_capped(self, service: ChatService, mock_embedder):
        await service.ask("  " + "x" * 5000 + "  ")

        sent = mock_embedder.embed.await_args.args[0]
        assert sent == "x" * 2000

    async def test_turn_persisted_for_known_user(self, service: ChatService, db_session):
        identity = CallerIdentity(user_id="user-1", session_id="session_1")

        reply = await service.ask("sleep help", identity=identity)

        turns = (await db_session.execute(select(ChatTurn))).scalars().all()
        assert len(turns) == 1
        assert turns[0].user_id == "user-1"
        assert turns[0].session_id == "session_1"
        assert turns[0].retrieved_count == 1
        assert turns[0].sources[0]["content"] == "Stay calm."
        assert reply.session_id == "session_1"

    async def test_anonymous_turn_not_persisted(self, service: ChatService, db_session):
        await service.ask("sleep help")

        turns = (await db_session.execute(select(ChatTurn))).scalars().all()
        assert turns == []

    async def test_telemetry_row_written(self, service: ChatService, db_session):
        await service.ask("sleep help")

        logs = (await db_session.execute(select(RAGQueryLog))).scalars().all()
        assert len(logs) == 1
        assert logs[0].retrieved_units_count == 1

    async def test_history_newest_first(self, service: ChatService):
        identity = CallerIdentity(user_id="user-1", session_id="s1")
        await service.ask("first", identity=identity)
        await service.ask("second", identity=identity)
        await service.ask("other session", identity=CallerIdentity(user_id="user-1", session_id="s2"))

        turns = await service.history("user-1", session_id="s1")

        assert [t.query for t in turns] == ["second", "first"]


class TestHandle:
    """Tests for the boundary wrapper that never raises."""

    async def test_success(self, service: ChatService, metrics: MetricsCollector):
        status_code, body = await service.handle("meltdowns")

        assert status_code == 200
        assert isinstance(body, ChatReply)
        payload = body.model_dump(by_alias=True)
        assert set(payload) >= {"response", "sources", "retrievedCount", "processingTime"}
        assert 'chat_requests_total{outcome="success"} 1' in metrics.render_prometheus()

    async def test_empty_query_is_400(self, service: ChatService):
        status_code, body = await service.handle("   ")

        assert status_code == 400
        assert isinstance(body, ChatErrorReply)
        assert body.error == "Message content is empty"
        assert body.response == EMPTY_QUERY_MESSAGE

    async def test_vector_failure_returns_apology(self, service: ChatService, store: FakeStore):
        store.vector_error = ConnectionError("network unreachable")

        status_code, body = await service.handle("meltdowns")

        assert status_code == 500
        assert isinstance(body, ChatErrorReply)
        assert "network unreachable" in body.error
        assert body.response.startswith("I apologize")
        assert body.error in body.response

    async def test_embedding_failure_returns_apology(self, service: ChatService, mock_embedder):
        mock_embedder.embed = AsyncMock(side_effect=EmbeddingUnavailable())

        status_code, body = await service.handle("meltdowns")

        assert status_code == 500
        assert body.error == "Failed to generate embedding"

    async def test_generation_failure_returns_apology(
        self, service: ChatService, mock_model_client, metrics: MetricsCollector
    ):
        mock_model_client.complete = AsyncMock(side_effect=GenerationFailed("Rate limit exceeded"))

        status_code, body = await service.handle("meltdowns")

        assert status_code == 500
        assert body.error == "Rate limit exceeded"
        assert 'chat_requests_total{outcome="error"} 1' in metrics.render_prometheus()

    async def test_unexpected_error_returns_apology(self):
        engine = MagicMock()
        engine.retrieve = AsyncMock(side_effect=KeyError("boom"))
        service = ChatService(engine, MagicMock())

        status_code, body = await service.handle("question")

        assert status_code == 500
        assert body.response.startswith("I apologize")

    async def test_non_string_filters_are_ignored(self, service: ChatService, store: FakeStore):
        status_code, body = await service.handle("meltdowns", category=5, importance=["high"])

        assert status_code == 200
        assert isinstance(body, ChatReply)
        filters = store.vector_calls[0]["filters"]
        assert filters.category is None
        assert filters.importance is None

    async def test_string_filters_are_forwarded(self, service: ChatService, store: FakeStore):
        await service.handle("meltdowns", category="behavior", importance="all")

        filters = store.vector_calls[0]["filters"]
        assert filters.category == "behavior"
        assert filters.importance is None
