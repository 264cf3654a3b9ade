"""Context assembly and answer generation."""

import json
import logging
import time
from dataclasses import dataclass

from heartbridge.core.ai_constants import (
    GROUNDED_INSTRUCTION,
    HEARTBRIDGE_SYSTEM_PROMPT,
    NO_CONTEXT_MARKER,
    UNGROUNDED_INSTRUCTION,
)
from heartbridge.core.config import Settings, get_settings
from heartbridge.knowledge.models import (
    RetrievalCandidate,
    RetrievalOutcome,
    StructuredContext,
)
from heartbridge.knowledge.understanding import CompletionModel
from heartbridge.services.telemetry import QueryLogEntry, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationPrompt:
    system: str
    user: str
    temperature: float
    grounded: bool


def format_candidate(candidate: RetrievalCandidate) -> str:
    """Render one candidate, preferring the original Q&A pair when present."""
    header = f"[Category: {candidate.category or 'general'}]"
    entities = candidate.entities or {}
    question = entities.get("question")
    answer = entities.get("answer")
    if question and answer:
        return f"{header}\nQuestion: {question}\nAnswer: {answer}"
    return f"{header}\n{candidate.content}"


def format_context(
    candidates: list[RetrievalCandidate],
    max_length: int = 3000,
) -> str:
    """Format gated candidates as context for the prompt.

    Args:
        candidates: Candidates, best first.
        max_length: Maximum total character length.

    Returns:
        Formatted context string, empty when there are no candidates.
    """
    if not candidates:
        return ""

    separator = "\n\n---\n\n"
    context_parts: list[str] = []
    current_length = 0

    for candidate in candidates:
        section = format_candidate(candidate)

        if current_length + len(section) > max_length:
            # Truncate if needed
            remaining = max_length - current_length - 50
            if remaining > 100:
                context_parts.append(section[:remaining] + "...")
            elif not context_parts:
                context_parts.append(section[:max_length] + "...")
            break

        context_parts.append(section)
        current_length += len(section) + len(separator)

    return separator.join(context_parts)


def format_structured(records: list[StructuredContext]) -> str:
    if not records:
        return ""
    lines = [json.dumps(r.payload, ensure_ascii=False, default=str) for r in records]
    return "\n\nRelated structured data:\n" + "\n".join(lines)


def build_prompt(
    query: str,
    outcome: RetrievalOutcome,
    settings: Settings | None = None,
    system_prompt: str = HEARTBRIDGE_SYSTEM_PROMPT,
) -> GenerationPrompt:
    """Build the system/user prompts and choose the temperature."""
    settings = settings or get_settings()
    grounded = outcome.grounded

    context = format_context(outcome.candidates, settings.max_context_chars)
    structured = format_structured(outcome.structured)

    if grounded:
        instruction = GROUNDED_INSTRUCTION
        temperature = settings.grounded_temperature
    else:
        context = NO_CONTEXT_MARKER
        instruction = UNGROUNDED_INSTRUCTION
        temperature = settings.ungrounded_temperature

    user_prompt = (
        f"Knowledge Base Content:\n---\n{context}\n---{structured}\n\n"
        f"User Question: {query}\n\n"
        f"{instruction}"
    )
    return GenerationPrompt(
        system=system_prompt,
        user=user_prompt,
        temperature=temperature,
        grounded=grounded,
    )


class AnswerGenerator:
    """Calls the language model once per question and logs telemetry."""

    def __init__(
        self,
        model_client: CompletionModel,
        telemetry: TelemetrySink | None = None,
        settings: Settings | None = None,
        system_prompt: str = HEARTBRIDGE_SYSTEM_PROMPT,
    ) -> None:
        self.model_client = model_client
        self.telemetry = telemetry
        self.settings = settings or get_settings()
        self.system_prompt = system_prompt

    async def generate(
        self,
        query: str,
        outcome: RetrievalOutcome,
        started_at: float | None = None,
    ) -> str:
        """Generate the answer text.

        Args:
            query: The user's question.
            outcome: Retrieval outcome for the question.
            started_at: ``time.perf_counter()`` value when the request began.

        Raises:
            GenerationFailed: If the model call fails or returns nothing.
        """
        started_at = started_at if started_at is not None else time.perf_counter()
        prompt = build_prompt(query, outcome, self.settings, self.system_prompt)

        response: str | None = None
        try:
            response = await self.model_client.complete(
                prompt.system,
                prompt.user,
                temperature=prompt.temperature,
                model=self.settings.generation_model,
            )
            return response
        finally:
            await self._record(query, outcome, response, started_at)

    async def _record(
        self,
        query: str,
        outcome: RetrievalOutcome,
        response: str | None,
        started_at: float,
    ) -> None:
        if self.telemetry is None:
            return
        try:
            await self.telemetry.record(
                QueryLogEntry(
                    query=query,
                    retrieved_units_count=len(outcome.candidates),
                    response=response,
                    processing_time_ms=int((time.perf_counter() - started_at) * 1000),
                )
            )
        except Exception as e:
            logger.warning(f"Telemetry sink raised: {e}")
