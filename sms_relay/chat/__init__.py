"""Conversation handling for the SMS relay.

Provides:
- Pydantic models for turns, histories and inbound messages
- Session storage (in-memory and SQLite backends)
- The exceptions raised along the conversation flow
"""

from sms_relay.chat.exceptions import (
    CompletionServiceError,
    MalformedHistoryError,
    MessagingServiceError,
    RelayError,
)
from sms_relay.chat.models import ChatMessage, ChatRole, ConversationHistory, InboundSms
from sms_relay.chat.session_store import (
    InMemorySessionBackend,
    Session,
    SessionBackend,
    SQLiteSessionBackend,
)

__all__ = [
    "ChatMessage",
    "ChatRole",
    "ConversationHistory",
    "InboundSms",
    "Session",
    "SessionBackend",
    "InMemorySessionBackend",
    "SQLiteSessionBackend",
    "RelayError",
    "MalformedHistoryError",
    "CompletionServiceError",
    "MessagingServiceError",
]
