"""Tests for the per-message conversation flow.

The completer and messenger are replaced by in-memory fakes; the session is a
real Session over the in-memory backend. Async calls are driven with
asyncio.run.
"""

import asyncio
from typing import List

import pytest

from sms_relay.api_clients.twilio.messenger import BaseMessenger
from sms_relay.chat.dispatcher import ReplyDispatcher
from sms_relay.chat.exceptions import CompletionServiceError, MessagingServiceError
from sms_relay.chat.history_codec import HISTORY_SESSION_KEY, decode_history, encode_history
from sms_relay.chat.models import ChatRole, ConversationHistory, InboundSms, TurnOutcome
from sms_relay.chat.orchestrator import (
    RESET_CONFIRMATION,
    ConversationOrchestrator,
    is_reset_command,
    send_now,
)
from sms_relay.chat.pseudonym import pseudonymize
from sms_relay.chat.session_store import InMemorySessionBackend, Session
from sms_relay.chat.splitter import PARAGRAPH_DELIMITER

SENDER = "+15551230000"
RECIPIENT = "+15559870000"


class FakeCompleter:
    """Returns canned replies and records each call."""

    def __init__(self, reply="Hello there!", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, messages, user_id, model_name=None):
        self.calls.append({"messages": list(messages), "user_id": user_id})
        if self.error is not None:
            raise self.error
        return self.reply


class FakeMessenger(BaseMessenger):
    def __init__(self, fail=False):
        self.sent: List[tuple] = []
        self.fail = fail

    def send(self, to, from_, body):
        if self.fail:
            raise MessagingServiceError("undeliverable", to=to)
        self.sent.append((to, from_, body))
        return f"SM{len(self.sent)}"


class RecordingScheduler:
    """Captures scheduled work instead of running it."""

    def __init__(self):
        self.tasks = []

    def __call__(self, fn, *args):
        self.tasks.append((fn, args))

    def run_all(self):
        for fn, args in self.tasks:
            fn(*args)


@pytest.fixture
def backend():
    return InMemorySessionBackend()


@pytest.fixture
def messenger():
    return FakeMessenger()


def make_orchestrator(completer, messenger, max_message_length=320):
    dispatcher = ReplyDispatcher(messenger, send_delay_seconds=0)
    return ConversationOrchestrator(
        completer=completer,
        messenger=messenger,
        dispatcher=dispatcher,
        max_message_length=max_message_length,
    )


def inbound(body):
    return InboundSms(sender=SENDER, recipient=RECIPIENT, body=body)


def seeded_session(backend, *turns):
    """Create a committed session holding the given (user, assistant) turns."""
    history = ConversationHistory()
    for user_text, assistant_text in turns:
        history.add_user_message(user_text)
        history.add_assistant_message(assistant_text)
    session = Session(backend)
    session.set(HISTORY_SESSION_KEY, encode_history(history))
    session.commit()
    return Session(backend, session.session_id)


@pytest.mark.parametrize("text", ["reset", "Reset", "RESET", "  reset \n"])
def test_is_reset_command(text):
    """Test reset detection ignores case and surrounding whitespace."""
    assert is_reset_command(text)


@pytest.mark.parametrize("text", ["", "resets", "please reset", "re set", "re\u017fet"])
def test_is_not_reset_command(text):
    assert not is_reset_command(text)


def test_normal_turn_persists_two_entries(backend, messenger):
    """Test a first message stores [user, assistant] and schedules the reply."""
    completer = FakeCompleter(reply="Hello! How can I help?")
    orchestrator = make_orchestrator(completer, messenger)
    session = Session(backend)
    scheduler = RecordingScheduler()

    result = asyncio.run(orchestrator.handle_message(inbound("Hi"), session, scheduler))

    history = decode_history(session.get(HISTORY_SESSION_KEY))
    assert [(m.role, m.content) for m in history.messages] == [
        (ChatRole.USER, "Hi"),
        (ChatRole.ASSISTANT, "Hello! How can I help?"),
    ]
    assert result.outcome == TurnOutcome.REPLIED
    assert result.history_length == 2
    assert len(scheduler.tasks) == 1
    assert messenger.sent == []  # nothing sent until the scheduled task runs

    scheduler.run_all()

    assert messenger.sent == [(SENDER, RECIPIENT, "Hello! How can I help?")]


def test_user_text_is_trimmed(backend, messenger):
    """Test the stored and sent user turn is the trimmed body."""
    completer = FakeCompleter()
    orchestrator = make_orchestrator(completer, messenger)
    session = Session(backend)

    asyncio.run(orchestrator.handle_message(inbound("  Hi  \n"), session, send_now))

    assert completer.calls[0]["messages"][0].content == "Hi"


def test_completion_receives_full_history_and_pseudonym(backend, messenger):
    """Test the whole ordered conversation and a pseudonymous id are sent."""
    completer = FakeCompleter(reply="Paris.")
    orchestrator = make_orchestrator(completer, messenger)
    session = seeded_session(backend, ("Hi", "Hello!"))

    asyncio.run(
        orchestrator.handle_message(inbound("Capital of France?"), session, send_now)
    )

    call = completer.calls[0]
    assert [m.content for m in call["messages"]] == ["Hi", "Hello!", "Capital of France?"]
    assert call["user_id"] == pseudonymize(SENDER)
    assert SENDER not in call["user_id"]


def test_history_grows_across_requests(backend, messenger):
    """Test consecutive requests on one session accumulate turns."""
    orchestrator = make_orchestrator(FakeCompleter(reply="ok"), messenger)
    session_id = None

    for text in ["one", "two", "three"]:
        session = Session(backend, session_id)
        asyncio.run(orchestrator.handle_message(inbound(text), session, send_now))
        session.commit()
        session_id = session.session_id

    history = decode_history(Session(backend, session_id).get(HISTORY_SESSION_KEY))
    assert len(history) == 6
    assert [m.content for m in history.messages[::2]] == ["one", "two", "three"]


def test_reply_chunks_rejoin_to_response(backend, messenger):
    """Test the sent chunks re-joined by the delimiter equal the reply."""
    paragraphs = [f"Paragraph {n}: " + "lorem ipsum " * 10 for n in range(5)]
    reply = PARAGRAPH_DELIMITER.join(p.strip() for p in paragraphs)
    orchestrator = make_orchestrator(FakeCompleter(reply=reply), messenger)

    result = asyncio.run(orchestrator.handle_message(inbound("Tell me"), Session(backend), send_now))

    bodies = [body for _, _, body in messenger.sent]
    assert len(bodies) > 1
    assert bodies == result.reply_chunks
    assert PARAGRAPH_DELIMITER.join(bodies) == reply
    assert all(len(body) <= 320 for body in bodies)


def test_long_single_paragraph_sent_whole(backend, messenger):
    """Test a 1000-character reply without breaks goes out as one message."""
    reply = ("word " * 200).strip()[:1000].ljust(1000, "x")
    orchestrator = make_orchestrator(FakeCompleter(reply=reply), messenger)

    asyncio.run(orchestrator.handle_message(inbound("Long please"), Session(backend), send_now))

    assert messenger.sent == [(SENDER, RECIPIENT, reply)]


def test_reset_clears_history_and_confirms(backend, messenger):
    """Test reset removes the history, confirms once and skips completion."""
    completer = FakeCompleter()
    orchestrator = make_orchestrator(completer, messenger)
    session = seeded_session(backend, ("Hi", "Hello!"), ("More", "Sure."))
    scheduler = RecordingScheduler()

    result = asyncio.run(orchestrator.handle_message(inbound("Reset"), session, scheduler))

    assert result.outcome == TurnOutcome.RESET
    assert result.reply_chunks == []
    assert session.get(HISTORY_SESSION_KEY) is None
    assert completer.calls == []
    assert scheduler.tasks == []
    assert messenger.sent == [(SENDER, RECIPIENT, RESET_CONFIRMATION)]
    assert RESET_CONFIRMATION == "Your conversation is now reset."


def test_reset_deletes_session_on_commit(backend, messenger):
    """Test a reset session is removed from the store."""
    orchestrator = make_orchestrator(FakeCompleter(), messenger)
    session = seeded_session(backend, ("Hi", "Hello!"))
    session_id = session.session_id

    asyncio.run(orchestrator.handle_message(inbound("reset"), session, send_now))
    session.commit()

    assert backend.read(session_id) is None


def test_reset_confirmation_failure_is_not_raised(backend):
    """Test a failed confirmation send still completes the reset."""
    messenger = FakeMessenger(fail=True)
    orchestrator = make_orchestrator(FakeCompleter(), messenger)
    session = seeded_session(backend, ("Hi", "Hello!"))

    result = asyncio.run(orchestrator.handle_message(inbound("reset"), session, send_now))

    assert result.outcome == TurnOutcome.RESET
    assert session.get(HISTORY_SESSION_KEY) is None


def test_reset_survives_unexpected_send_error(backend):
    """Test any error from the confirmation send is logged, not raised."""

    class ExplodingMessenger(BaseMessenger):
        def send(self, to, from_, body):
            raise RuntimeError("socket closed")

    orchestrator = make_orchestrator(FakeCompleter(), ExplodingMessenger())
    session = seeded_session(backend, ("Hi", "Hello!"))
    session_id = session.session_id

    result = asyncio.run(orchestrator.handle_message(inbound("reset"), session, send_now))
    session.commit()

    assert result.outcome == TurnOutcome.RESET
    assert backend.read(session_id) is None


def test_completion_failure_leaves_history_untouched(backend, messenger):
    """Test a failed completion propagates and nothing is stored or sent."""
    completer = FakeCompleter(error=CompletionServiceError("quota exceeded"))
    orchestrator = make_orchestrator(completer, messenger)
    session = seeded_session(backend, ("Hi", "Hello!"))
    scheduler = RecordingScheduler()

    with pytest.raises(CompletionServiceError):
        asyncio.run(orchestrator.handle_message(inbound("Again"), session, scheduler))

    assert not session.is_modified
    assert len(decode_history(session.get(HISTORY_SESSION_KEY))) == 2
    assert scheduler.tasks == []
    assert messenger.sent == []


def test_cancelled_completion_writes_nothing(backend, messenger):
    """Test cancellation while awaiting the completion skips the session write."""

    class HangingCompleter:
        async def complete(self, messages, user_id, model_name=None):
            await asyncio.sleep(3600)

    orchestrator = make_orchestrator(HangingCompleter(), messenger)
    session = Session(backend)

    async def run():
        task = asyncio.create_task(orchestrator.handle_message(inbound("Hi"), session, send_now))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert not session.is_modified
    assert messenger.sent == []


def test_malformed_history_starts_fresh(backend, messenger):
    """Test corrupt stored history is discarded instead of failing."""
    stored = Session(backend)
    stored.set(HISTORY_SESSION_KEY, b"{not valid")
    stored.commit()
    completer = FakeCompleter(reply="Fresh start")
    orchestrator = make_orchestrator(completer, messenger)
    session = Session(backend, stored.session_id)

    result = asyncio.run(orchestrator.handle_message(inbound("Hi"), session, send_now))

    assert result.history_length == 2
    assert [m.content for m in completer.calls[0]["messages"]] == ["Hi"]


def test_empty_body_is_relayed(backend, messenger):
    """Test an empty message still goes to the model as an empty user turn."""
    completer = FakeCompleter()
    orchestrator = make_orchestrator(completer, messenger)

    asyncio.run(orchestrator.handle_message(inbound(""), Session(backend), send_now))

    assert completer.calls[0]["messages"][0].content == ""


def test_default_dispatcher_built_from_messenger(messenger):
    """Test a dispatcher is created when none is given."""
    orchestrator = ConversationOrchestrator(
        completer=FakeCompleter(), messenger=messenger, send_delay_seconds=0.5
    )

    assert orchestrator.dispatcher.messenger is messenger
    assert orchestrator.dispatcher.send_delay_seconds == 0.5
