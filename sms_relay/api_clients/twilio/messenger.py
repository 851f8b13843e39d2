"""Outbound SMS clients.

`TwilioMessenger` creates messages through Twilio's REST API; `ConsoleMessenger`
prints them, for local conversations from the CLI.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

import requests
import typer
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from sms_relay.chat.exceptions import MessagingServiceError
from sms_relay.utils.logger import LoggerManager

logger = LoggerManager.get_logger(__name__)


class BaseMessenger(ABC):
    @abstractmethod
    def send(self, to: str, from_: str, body: str) -> str:
        """Send one SMS and return the provider's message id.

        Raises:
            MessagingServiceError: If the provider rejects or fails the send
        """


class TwilioMessenger(BaseMessenger):
    """
    Sends SMS through the Twilio REST API.

    The underlying `twilio.rest.Client` is safe to share between concurrent
    requests.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        client: Optional[Client] = None,
    ):
        """
        Args:
            account_sid (str, optional): Twilio account SID.
            auth_token (str, optional): Twilio auth token.
            client (Client, optional): Preconfigured client; takes precedence
                over the credentials.

        Raises:
            ValueError: If neither a client nor both credentials are given.
        """
        if client is None:
            if not (account_sid and auth_token):
                logger.error("Twilio credentials not configured")
                raise ValueError(
                    "Twilio credentials not found. Set TWILIO_ACCOUNT_SID and "
                    "TWILIO_AUTH_TOKEN or pass a client."
                )
            client = Client(account_sid, auth_token)
        self.client = client

    def send(self, to: str, from_: str, body: str) -> str:
        try:
            message = self.client.messages.create(to=to, from_=from_, body=body)
        except TwilioException as e:
            logger.error(
                "Twilio rejected outbound message",
                extra={"status": getattr(e, "status", None), "code": getattr(e, "code", None)},
            )
            raise MessagingServiceError.from_api_error(e, to=to) from e
        except requests.RequestException as e:
            # Transport failures from the REST client's HTTP layer
            logger.error(
                "Twilio request failed", extra={"error_type": type(e).__name__, "error": str(e)}
            )
            raise MessagingServiceError.from_api_error(e, to=to) from e

        logger.debug("Outbound message created", extra={"sid": message.sid, "length": len(body)})
        return message.sid


class ConsoleMessenger(BaseMessenger):
    """Writes outbound messages to the terminal and remembers them."""

    def __init__(self, echo: Callable[[str], None] = typer.echo):
        self.echo = echo
        self.sent: List[Tuple[str, str, str]] = []

    def send(self, to: str, from_: str, body: str) -> str:
        self.sent.append((to, from_, body))
        self.echo(f"[{from_} -> {to}] {body}")
        return f"console-{len(self.sent)}"
