"""Construction of the relay's collaborators from settings."""

from datetime import timedelta
from pathlib import Path
from typing import Optional

from sms_relay.api_clients.openai.completer import ChatCompleter
from sms_relay.api_clients.twilio.messenger import BaseMessenger, TwilioMessenger
from sms_relay.chat.dispatcher import ReplyDispatcher
from sms_relay.chat.orchestrator import ConversationOrchestrator
from sms_relay.chat.session_store import (
    InMemorySessionBackend,
    SessionBackend,
    SQLiteSessionBackend,
)
from sms_relay.config import RelaySettings, SessionSettings
from sms_relay.utils.logger import LoggerManager
from sms_relay.utils.usage_logger import CompletionUsageLogger

logger = LoggerManager.get_logger(__name__)


def build_session_backend(settings: SessionSettings) -> SessionBackend:
    idle_timeout = timedelta(minutes=settings.idle_timeout_minutes)
    if settings.backend == "sqlite":
        backend = SQLiteSessionBackend(settings.sqlite_path, idle_timeout=idle_timeout)
    else:
        backend = InMemorySessionBackend(idle_timeout=idle_timeout)
    logger.info(
        "Session backend ready",
        extra={"backend": settings.backend, "idle_timeout_minutes": settings.idle_timeout_minutes},
    )
    return backend


def build_completer(settings: RelaySettings) -> ChatCompleter:
    openai_settings = settings.openai
    return ChatCompleter(
        api_key=openai_settings.api_key,
        model_name=openai_settings.model_name,
        endpoint=openai_settings.endpoint,
        api_version=openai_settings.api_version,
        timeout_seconds=openai_settings.timeout_seconds,
        usage_logger=CompletionUsageLogger(
            Path(settings.logging.log_dir) / "completion_usage.jsonl"
        ),
    )


def build_orchestrator(
    settings: RelaySettings,
    messenger: Optional[BaseMessenger] = None,
    completer: Optional[ChatCompleter] = None,
) -> ConversationOrchestrator:
    """Wire completer, messenger and dispatcher together.

    Args:
        settings: Relay settings
        messenger: Outbound SMS client; a TwilioMessenger by default
        completer: Chat completion client; built from settings by default

    Raises:
        CompletionServiceError: If no completion API key is configured
        ValueError: If Twilio credentials are missing and no messenger is given
    """
    if messenger is None:
        messenger = TwilioMessenger(
            account_sid=settings.twilio.account_sid,
            auth_token=settings.twilio.auth_token,
        )
    if completer is None:
        completer = build_completer(settings)

    dispatcher = ReplyDispatcher(messenger, send_delay_seconds=settings.sms.send_delay_seconds)
    return ConversationOrchestrator(
        completer=completer,
        messenger=messenger,
        dispatcher=dispatcher,
        max_message_length=settings.sms.max_message_length,
    )
