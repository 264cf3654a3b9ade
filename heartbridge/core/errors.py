"""Error taxonomy for the chat pipeline."""


class HeartBridgeError(Exception):
    """Base exception for pipeline errors.

    ``detail`` is safe to show to the end user.
    """

    default_detail = "Request processing failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class EmptyQuery(HeartBridgeError):
    """Caller sent blank or whitespace-only input."""

    default_detail = "Message content is empty"


class EmbeddingUnavailable(HeartBridgeError):
    """Embedding call failed or returned a malformed payload."""

    default_detail = "Failed to generate embedding"


class RetrievalFailed(HeartBridgeError):
    """Vector search against the knowledge store failed."""

    default_detail = "Knowledge search failed"


class QueryUnderstandingDegraded(HeartBridgeError):
    """Auxiliary model reply could not be used; caller falls back."""

    default_detail = "Query understanding unavailable"


class GenerationFailed(HeartBridgeError):
    """Language model call failed or returned no content."""

    default_detail = "Failed to generate AI response"


class TelemetryWriteFailed(HeartBridgeError):
    """Query log could not be written."""

    default_detail = "Failed to write query log"
