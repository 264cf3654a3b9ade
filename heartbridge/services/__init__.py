"""Service layer for HeartBridge.

Services orchestrate retrieval, generation and persistence.
"""

from heartbridge.services.chat import CallerIdentity, ChatService
from heartbridge.services.generator import AnswerGenerator
from heartbridge.services.llm_client import ChatModelClient
from heartbridge.services.telemetry import QueryLogSink

__all__ = [
    "AnswerGenerator",
    "CallerIdentity",
    "ChatModelClient",
    "ChatService",
    "QueryLogSink",
]
