"""Command line entry points for the SMS relay.

Commands:
- serve: run the webhook API under uvicorn
- chat: hold a conversation with the relay from the terminal, with replies
  printed instead of sent as SMS
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer  # type: ignore
import uvicorn

from sms_relay.api_clients.twilio.messenger import ConsoleMessenger
from sms_relay.bootstrap import build_orchestrator
from sms_relay.chat.exceptions import CompletionServiceError
from sms_relay.chat.models import InboundSms
from sms_relay.chat.orchestrator import ConversationOrchestrator, send_now
from sms_relay.chat.session_store import InMemorySessionBackend, Session
from sms_relay.config import load_settings
from sms_relay.utils.logger import LoggerManager

app = typer.Typer(help="Relay SMS conversations to a chat completion model.")

cli_logger = LoggerManager.get_logger("cli")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind."),
    port: int = typer.Option(8000, help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
):
    """
    Runs the webhook API (POST /message) under uvicorn.
    """
    cli_logger.info("Starting API server", extra={"host": host, "port": port})
    uvicorn.run("app.api.main:app", host=host, port=port, reload=reload)


@app.command()
def chat(
    config: Optional[Path] = typer.Option(
        None, "--config", help="Path to the relay YAML config."
    ),
    sender: str = typer.Option("+15550000001", help="Phone number to chat as."),
    recipient: str = typer.Option("+15550000002", help="Relay phone number."),
):
    """
    Chats with the model from the terminal, one SMS per line.

    Replies are split exactly as they would be for SMS and printed one chunk
    at a time. Type 'reset' to start over, or an empty line to quit.
    """
    settings = load_settings(config)
    LoggerManager.configure(level=settings.logging.level, log_dir=settings.logging.log_dir)

    try:
        orchestrator = build_orchestrator(
            settings, messenger=ConsoleMessenger(echo=lambda line: typer.secho(line, fg="cyan"))
        )
    except CompletionServiceError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    # No pacing needed on a terminal
    orchestrator.dispatcher.send_delay_seconds = 0

    # One event loop for the whole conversation; the async client's connection
    # pool is bound to it.
    asyncio.run(_chat_loop(orchestrator, InMemorySessionBackend(), sender, recipient))
    typer.echo("Bye.")


async def _chat_loop(
    orchestrator: ConversationOrchestrator,
    backend: InMemorySessionBackend,
    sender: str,
    recipient: str,
) -> None:
    session_id = None
    while True:
        text = typer.prompt("you", default="", show_default=False)
        if not text.strip():
            return

        session = Session(backend, session_id)
        try:
            await orchestrator.handle_message(
                InboundSms(sender=sender, recipient=recipient, body=text),
                session,
                schedule=send_now,
            )
        except CompletionServiceError as e:
            typer.echo(f"❌ {e}", err=True)
            continue

        session.commit()
        session_id = None if session.is_empty else session.session_id


if __name__ == "__main__":
    app()
