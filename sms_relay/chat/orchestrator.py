"""Per-message conversation flow.

For each inbound SMS the orchestrator:
1. Resets the conversation when the body is the reset command
2. Loads the stored history and appends the user's turn
3. Asks the chat completion service for a reply, on behalf of a pseudonymous user
4. Appends the reply and stores the history back in the session
5. Splits the reply into SMS-sized chunks and schedules their delivery

It keeps no state between requests; everything lives in the session.
"""

import asyncio
from typing import Any, Callable

from sms_relay.api_clients.openai.completer import ChatCompleter
from sms_relay.api_clients.twilio.messenger import BaseMessenger
from sms_relay.chat.dispatcher import ReplyDispatcher
from sms_relay.chat.exceptions import MalformedHistoryError, MessagingServiceError
from sms_relay.chat.history_codec import HISTORY_SESSION_KEY, decode_history, encode_history
from sms_relay.chat.models import ConversationHistory, InboundSms, TurnOutcome, TurnResult
from sms_relay.chat.pseudonym import pseudonymize
from sms_relay.chat.session_store import Session
from sms_relay.chat.splitter import DEFAULT_MAX_MESSAGE_LENGTH, split_into_messages
from sms_relay.utils.logger import LoggerManager

RESET_COMMAND = "reset"
RESET_CONFIRMATION = "Your conversation is now reset."

# Runs fn(*args) detached from the request, e.g. BackgroundTasks.add_task
Scheduler = Callable[..., Any]


def is_reset_command(text: str) -> bool:
    return text.strip().lower() == RESET_COMMAND


class ConversationOrchestrator:
    """Relays one inbound SMS to the chat model and schedules the reply.

    Attributes:
        completer: Chat completion client
        messenger: SMS client (used directly for the reset confirmation)
        dispatcher: Sends multi-part replies with pacing
        max_message_length: Upper bound for each reply chunk
    """

    def __init__(
        self,
        completer: ChatCompleter,
        messenger: BaseMessenger,
        dispatcher: ReplyDispatcher = None,
        max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
        send_delay_seconds: float = 1.0,
    ):
        self.completer = completer
        self.messenger = messenger
        self.dispatcher = dispatcher or ReplyDispatcher(
            messenger, send_delay_seconds=send_delay_seconds
        )
        self.max_message_length = max_message_length
        self.logger = LoggerManager.get_logger(__name__)

    async def handle_message(
        self,
        message: InboundSms,
        session: Session,
        schedule: Scheduler,
    ) -> TurnResult:
        """Handle one inbound SMS.

        The session is only written after the completion succeeded, so a
        failed or cancelled request leaves the stored history untouched.

        Args:
            message: Inbound SMS fields
            session: Session of the sender/recipient pair
            schedule: Callable that runs `fn(*args)` without the caller awaiting it

        Returns:
            TurnResult describing what happened

        Raises:
            CompletionServiceError: If the completion call fails
            asyncio.CancelledError: If the request is cancelled while waiting
        """
        text = message.text

        if is_reset_command(text):
            await self._reset(message, session)
            return TurnResult(outcome=TurnOutcome.RESET)

        history = self._load_history(session)
        history.add_user_message(text)

        user_id = pseudonymize(message.sender)
        response_text = await self.completer.complete(history.messages, user_id=user_id)

        history.add_assistant_message(response_text)
        session.set(HISTORY_SESSION_KEY, encode_history(history))

        chunks = split_into_messages(response_text, max_length=self.max_message_length)
        schedule(self.dispatcher.send_all, message.sender, message.recipient, chunks)

        self.logger.info(
            "Conversation turn completed",
            extra={
                "session_id": session.session_id,
                "user_id": user_id,
                "history_length": len(history),
                "chunk_count": len(chunks),
                "oversized_chunks": sum(len(c) > self.max_message_length for c in chunks),
            },
        )
        return TurnResult(
            outcome=TurnOutcome.REPLIED,
            reply_chunks=chunks,
            history_length=len(history),
        )

    def _load_history(self, session: Session) -> ConversationHistory:
        try:
            return decode_history(session.get(HISTORY_SESSION_KEY))
        except MalformedHistoryError as e:
            self.logger.warning(
                "Discarding malformed conversation history",
                extra={"session_id": session.session_id, "error": str(e)},
            )
            return ConversationHistory()

    async def _reset(self, message: InboundSms, session: Session) -> None:
        session.remove(HISTORY_SESSION_KEY)
        self.logger.info("Conversation reset", extra={"session_id": session.session_id})

        try:
            await asyncio.to_thread(
                self.messenger.send,
                to=message.sender,
                from_=message.recipient,
                body=RESET_CONFIRMATION,
            )
        except MessagingServiceError as e:
            self.logger.error(
                "Failed to send reset confirmation",
                extra={"session_id": session.session_id, "error": str(e)},
            )
        except Exception:
            # The reset stands even if the confirmation never goes out
            self.logger.exception(
                "Unexpected error sending reset confirmation",
                extra={"session_id": session.session_id},
            )

    async def close(self) -> None:
        """Release the completion client's connection pool."""
        await self.completer.close()


def send_now(fn: Callable[..., Any], *args: Any) -> None:
    """Scheduler that runs the callable immediately (console conversations)."""
    fn(*args)

