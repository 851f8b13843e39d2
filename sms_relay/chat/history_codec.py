"""Session serialization of conversation histories.

A history is stored under a single session key as a UTF-8 JSON array of
`{"role": ..., "content": ...}` records, in conversation order.
"""

from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from sms_relay.chat.exceptions import MalformedHistoryError
from sms_relay.chat.models import ChatMessage, ConversationHistory

HISTORY_SESSION_KEY = "conversation_history"

_MESSAGES_ADAPTER = TypeAdapter(List[ChatMessage])


def encode_history(history: ConversationHistory) -> bytes:
    """Serialize the full ordered history to bytes.

    Args:
        history: Conversation to serialize

    Returns:
        UTF-8 encoded JSON array of role/content records
    """
    return _MESSAGES_ADAPTER.dump_json(history.messages)


def decode_history(data: Optional[bytes]) -> ConversationHistory:
    """Deserialize stored bytes into a history.

    Args:
        data: Bytes previously produced by `encode_history`, or None when the
            session holds no history yet

    Returns:
        The decoded history, empty when `data` is None

    Raises:
        MalformedHistoryError: If the bytes are not a JSON array of
            role/content records
    """
    if data is None:
        return ConversationHistory()

    try:
        messages = _MESSAGES_ADAPTER.validate_json(data)
    except (ValidationError, UnicodeDecodeError) as e:
        raise MalformedHistoryError(
            f"Stored conversation history is malformed: {e}", original_error=e
        ) from e

    return ConversationHistory(messages=messages)
