"""Chat-completion client used for query understanding and answer generation."""

import asyncio
import logging
from typing import Any, Optional

from heartbridge.core.config import Settings, get_settings
from heartbridge.core.errors import GenerationFailed
from heartbridge.observability import MetricsBackend, track_external_call

logger = logging.getLogger(__name__)


class ChatModelClient:
    """Thin wrapper around ``AsyncOpenAI`` chat completions.

    Every call is ``(system_prompt, user_prompt) -> text``. Failures, timeouts
    and empty replies raise ``GenerationFailed``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        max_tokens: int = 2000,
        timeout_seconds: float = 20.0,
        metrics: Optional[MetricsBackend] = None,
        client: Any = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self._client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        metrics: Optional[MetricsBackend] = None,
    ) -> "ChatModelClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.openai_api_key,
            model=settings.generation_model,
            base_url=settings.openai_base_url,
            max_tokens=settings.generation_max_tokens,
            timeout_seconds=settings.external_call_timeout_seconds,
            metrics=metrics,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        model: Optional[str] = None,
    ) -> str:
        """Run one chat completion and return the reply text."""
        from openai import APIStatusError, RateLimitError

        model_name = model or self.model
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

        try:
            with track_external_call(self.metrics, "openai", f"chat:{model_name}"):
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=model_name,
                        messages=messages,
                        temperature=temperature,
                        max_tokens=self.max_tokens,
                    ),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            logger.error(f"Chat completion timed out after {self.timeout_seconds}s ({model_name})")
            raise GenerationFailed("AI service timed out. Please try again.") from e
        except RateLimitError as e:
            logger.error(f"Chat completion rate limited: {e}")
            raise GenerationFailed("Rate limit exceeded. Please try again in a moment.") from e
        except APIStatusError as e:
            logger.error(f"Chat API error: {e.status_code} {e}")
            if e.status_code == 402:
                raise GenerationFailed(
                    "AI service requires additional credits. Please contact support."
                ) from e
            raise GenerationFailed() from e
        except Exception as e:
            logger.error(f"Chat completion failed: {e}")
            raise GenerationFailed() from e

        return _reply_text(response)


def _reply_text(response: Any) -> str:
    """Extract the first choice's content, rejecting empty replies."""
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError) as e:
        raise GenerationFailed("AI response was malformed") from e

    if not content or not content.strip():
        raise GenerationFailed("AI response was empty")
    return content
