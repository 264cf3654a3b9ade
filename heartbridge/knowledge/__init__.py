"""Knowledge base module for retrieval-augmented answers.

Loads knowledge units, embeds them and retrieves the most relevant unit for a
question by fusing vector and keyword search.
"""

from heartbridge.knowledge.embeddings import EmbeddingClient
from heartbridge.knowledge.models import (
    QueryUnderstanding,
    RetrievalCandidate,
    RetrievalOutcome,
    StructuredContext,
)
from heartbridge.knowledge.retriever import RetrievalEngine
from heartbridge.knowledge.service import KnowledgeService
from heartbridge.knowledge.store import KnowledgeStore, SQLKnowledgeStore
from heartbridge.knowledge.understanding import QueryUnderstander

__all__ = [
    "EmbeddingClient",
    "KnowledgeService",
    "KnowledgeStore",
    "QueryUnderstander",
    "QueryUnderstanding",
    "RetrievalCandidate",
    "RetrievalEngine",
    "RetrievalOutcome",
    "SQLKnowledgeStore",
    "StructuredContext",
]
