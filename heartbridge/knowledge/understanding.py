"""Keyword and category extraction from a raw question.

The auxiliary model is asked for a fixed JSON shape, which it may or may not
honor. Parsing is a separate fallible step so the deterministic fallback can
be exercised without a model.
"""

import json
import logging
import re
from typing import Protocol

from pydantic import ValidationError

from heartbridge.core.ai_constants import QUERY_UNDERSTANDING_PROMPT
from heartbridge.core.errors import HeartBridgeError, QueryUnderstandingDegraded
from heartbridge.knowledge.models import QueryUnderstanding

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


class CompletionModel(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        model: str | None = None,
    ) -> str:
        ...


def fallback_understanding(query: str) -> QueryUnderstanding:
    """Split the question on whitespace; no categories."""
    return QueryUnderstanding(keywords=query.split(), categories=[], degraded=True)


def parse_understanding(text: str) -> QueryUnderstanding:
    """Parse the model reply into keywords and categories.

    Raises:
        QueryUnderstandingDegraded: If the reply is not the expected JSON shape.
    """
    if not text or not text.strip():
        raise QueryUnderstandingDegraded("Empty query understanding reply")

    body = text.strip()
    fence = _FENCE_RE.match(body)
    if fence:
        body = fence.group(1)

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise QueryUnderstandingDegraded(f"Reply is not JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise QueryUnderstandingDegraded("Reply JSON is not an object")

    try:
        return QueryUnderstanding(
            keywords=data.get("keywords"),
            categories=data.get("categories"),
        )
    except ValidationError as e:
        raise QueryUnderstandingDegraded("Reply JSON has an unexpected shape") from e


class QueryUnderstander:
    """Extracts ``{keywords, categories}`` via an auxiliary chat model.

    Never raises for model or parse problems; returns a degraded result.
    """

    def __init__(
        self,
        model_client: CompletionModel,
        model: str | None = None,
        temperature: float = 0.3,
    ) -> None:
        self.model_client = model_client
        self.model = model
        self.temperature = temperature

    async def understand(self, query: str) -> QueryUnderstanding:
        try:
            reply = await self.model_client.complete(
                QUERY_UNDERSTANDING_PROMPT,
                query,
                temperature=self.temperature,
                model=self.model,
            )
            return parse_understanding(reply)
        except QueryUnderstandingDegraded as e:
            logger.warning(f"Query understanding reply unusable, using fallback: {e.detail}")
        except HeartBridgeError as e:
            logger.warning(f"Query understanding call failed, using fallback: {e.detail}")
        except Exception as e:
            logger.warning(f"Query understanding raised unexpectedly, using fallback: {e}")
        return fallback_understanding(query)
