"""Sequential delivery of multi-part replies.

Carriers do not guarantee that separately sent SMS arrive in order. Sending
the parts one at a time with a short pause in between keeps them in order in
most cases. The whole sequence runs detached from the webhook request, which
has to answer within Twilio's 10 second budget.
"""

import time
from typing import Callable, List, Optional

from sms_relay.api_clients.twilio.messenger import BaseMessenger
from sms_relay.chat.exceptions import MessagingServiceError
from sms_relay.utils.logger import LoggerManager

ErrorHook = Callable[[int, Exception], None]


class ReplyDispatcher:
    """Sends reply chunks one after another with a fixed delay between sends.

    A failed chunk is logged (and reported to `on_error` when given) and the
    remaining chunks are still attempted. Nothing is retried.

    Attributes:
        messenger: Client used to create each outbound message
        send_delay_seconds: Pause between successive sends
        on_error: Optional hook called with (chunk_index, error)
    """

    def __init__(
        self,
        messenger: BaseMessenger,
        send_delay_seconds: float = 1.0,
        on_error: Optional[ErrorHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.messenger = messenger
        self.send_delay_seconds = send_delay_seconds
        self.on_error = on_error
        self._sleep = sleep
        self.logger = LoggerManager.get_logger(__name__)

    def send_all(self, to: str, from_: str, bodies: List[str]) -> List[str]:
        """Send every body in order.

        Args:
            to: Destination address (the original sender)
            from_: Originating address (the number the user wrote to)
            bodies: Message bodies in delivery order

        Returns:
            Provider message ids of the chunks that were accepted
        """
        sids: List[str] = []
        for index, body in enumerate(bodies):
            if index > 0 and self.send_delay_seconds > 0:
                self._sleep(self.send_delay_seconds)

            try:
                sids.append(self.messenger.send(to=to, from_=from_, body=body))
            except MessagingServiceError as e:
                self._report(index, len(bodies), e)
            except Exception as e:
                self.logger.exception(
                    "Unexpected error sending reply chunk",
                    extra={"chunk_index": index, "chunk_count": len(bodies)},
                )
                self._report(index, len(bodies), e, logged=True)

        self.logger.info(
            "Reply dispatch finished",
            extra={"chunk_count": len(bodies), "sent_count": len(sids)},
        )
        return sids

    def _report(self, index: int, total: int, error: Exception, logged: bool = False) -> None:
        if not logged:
            self.logger.error(
                "Failed to send reply chunk",
                extra={"chunk_index": index, "chunk_count": total, "error": str(error)},
            )
        if self.on_error is not None:
            try:
                self.on_error(index, error)
            except Exception:
                self.logger.exception("Dispatch error hook raised", extra={"chunk_index": index})
