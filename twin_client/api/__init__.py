"""
Typed Living Twin API surface.
"""

from twin_client.api.facade import (
    Invalidation,
    TwinApiClient,
    conversation_key,
    conversations_key,
)
from twin_client.api.models import (
    Conversation,
    ConversationMessage,
    ConversationResponse,
    ConversationSummary,
    HealthStatus,
    IngestResponse,
    QueryResponse,
)
from twin_client.api.decoders import decode

__all__ = [
    "TwinApiClient",
    "Invalidation",
    "conversations_key",
    "conversation_key",
    "decode",
    "Conversation",
    "ConversationMessage",
    "ConversationResponse",
    "ConversationSummary",
    "HealthStatus",
    "IngestResponse",
    "QueryResponse",
]
