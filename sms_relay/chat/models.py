"""Pydantic models for SMS conversations.

This module defines the core data structures of a relayed conversation:
- ChatRole: Who authored a turn
- ChatMessage: Individual, immutable conversation turn
- ConversationHistory: Ordered turns of one session
- InboundSms: Fields Twilio posts to the message webhook
- TurnResult: Outcome of handling one inbound message
"""

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class ChatRole(str, Enum):
    """Author of a conversation turn.

    SYSTEM is accepted when decoding but never produced by the relay.
    """
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single turn in a conversation.

    Attributes:
        role: Who sent the message (user, assistant, system)
        content: Text content of the message
    """

    role: ChatRole
    content: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, content=content)

    def to_provider_message(self) -> Dict[str, str]:
        """Render as a chat-completions message dict."""
        return {"role": self.role.value, "content": self.content}


class ConversationHistory(BaseModel):
    """Chronologically ordered turns of one session.

    Normal flow appends one user turn and, once the completion succeeds,
    one assistant turn, so the history alternates user/assistant starting
    with the user. A reset removes the history from the session entirely.

    Attributes:
        messages: Turns in the order they happened
    """

    messages: List[ChatMessage] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)

    def add_user_message(self, content: str) -> ChatMessage:
        message = ChatMessage.user(content)
        self.messages.append(message)
        return message

    def add_assistant_message(self, content: str) -> ChatMessage:
        message = ChatMessage.assistant(content)
        self.messages.append(message)
        return message

    def to_provider_messages(self) -> List[Dict[str, str]]:
        return [message.to_provider_message() for message in self.messages]


class InboundSms(BaseModel):
    """Inbound message as posted by the Twilio webhook.

    Attributes:
        sender: Sender's address (form field `From`)
        recipient: The relay's number that received it (form field `To`)
        body: Message text (form field `Body`), untrimmed
    """

    sender: str
    recipient: str
    body: str = ""

    @property
    def text(self) -> str:
        return self.body.strip()


class TurnOutcome(str, Enum):
    RESET = "reset"
    REPLIED = "replied"


class TurnResult(BaseModel):
    """Result of handling one inbound message.

    Attributes:
        outcome: Whether the conversation was reset or answered
        reply_chunks: SMS bodies scheduled for delivery (empty on reset)
        history_length: Number of turns stored after this request
    """

    outcome: TurnOutcome
    reply_chunks: List[str] = Field(default_factory=list)
    history_length: int = 0
