"""Cookie-scoped server-side sessions for webhook requests.

The middleware reads the session id from a cookie, exposes a
`sms_relay.chat.session_store.Session` as `request.state.session`, and, when
the response starts, commits any changes and refreshes (or expires) the cookie.

Responses that fail with an unhandled exception or a 5xx status are not
committed, so a failed turn never persists.
"""

from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool
from starlette.datastructures import MutableHeaders
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from sms_relay.chat.session_store import Session, SessionBackend
from sms_relay.config import SessionSettings
from sms_relay.utils.logger import LoggerManager

logger = LoggerManager.get_logger(__name__)

EXPIRED_COOKIE_DATE = "Thu, 01 Jan 1970 00:00:00 GMT"


def build_session_cookie(settings: SessionSettings, value: str, expire: bool = False) -> str:
    """Render a Set-Cookie header value for the session cookie."""
    parts = [f"{settings.cookie_name}={value}", "path=/", "httponly", "samesite=lax"]
    if expire:
        parts.append(f"expires={EXPIRED_COOKIE_DATE}")
        parts.append("max-age=0")
    if settings.cookie_secure:
        parts.append("secure")
    return "; ".join(parts)


class SessionMiddleware:
    """Pure ASGI middleware attaching a per-request Session.

    Backend and settings are resolved per request through providers, so the
    app can create them on startup (and tests can swap them).
    """

    def __init__(
        self,
        app: ASGIApp,
        backend_provider: Callable[[], Optional[SessionBackend]],
        settings_provider: Callable[[], SessionSettings],
    ):
        self.app = app
        self.backend_provider = backend_provider
        self.settings_provider = settings_provider

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        backend = self.backend_provider()
        if backend is None:
            await self.app(scope, receive, send)
            return

        settings = self.settings_provider()
        connection = HTTPConnection(scope)
        session = Session(backend, connection.cookies.get(settings.cookie_name))
        scope.setdefault("state", {})["session"] = session

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start" and message["status"] < 500:
                await self._finalize(session, settings, message)
            await send(message)

        await self.app(scope, receive, send_wrapper)

    async def _finalize(self, session: Session, settings: SessionSettings, message: Message) -> None:
        if not session.is_modified:
            return

        await run_in_threadpool(session.commit)
        headers = MutableHeaders(scope=message)
        if session.is_empty:
            if not session.is_new:
                headers.append("Set-Cookie", build_session_cookie(settings, "", expire=True))
            logger.debug("Session cleared", extra={"session_id": session.session_id})
        else:
            headers.append("Set-Cookie", build_session_cookie(settings, session.session_id))
            logger.debug(
                "Session committed",
                extra={"session_id": session.session_id, "new_session": session.is_new},
            )
