"""FastAPI application for the SMS relay webhook.

This module provides the HTTP layer that:
- Receives Twilio's inbound SMS webhook on POST /message
- Validates the webhook signature
- Scopes conversations with a cookie-backed server-side session
- Hands each message to the ConversationOrchestrator
- Answers immediately while reply chunks are sent in the background
"""

import asyncio
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Form, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool
from twilio.request_validator import RequestValidator

from app.api.models import ErrorResponse, HealthResponse
from app.api.session_middleware import SessionMiddleware
from app.api.webhook_security import SIGNATURE_HEADER, is_valid_signature, public_url
from sms_relay.bootstrap import build_orchestrator, build_session_backend
from sms_relay.chat.exceptions import CompletionServiceError
from sms_relay.chat.models import InboundSms
from sms_relay.chat.orchestrator import ConversationOrchestrator
from sms_relay.chat.session_store import Session, SessionBackend
from sms_relay.config import RelaySettings, SessionSettings, load_settings
from sms_relay.utils.logger import LoggerManager

# Initialize logger
logger = LoggerManager.get_logger(__name__)

# Idle sessions are swept this often, on top of expiry on read
SESSION_PURGE_INTERVAL_SECONDS = 300

# How often an in-flight turn checks whether Twilio is still waiting
DISCONNECT_POLL_INTERVAL_SECONDS = 0.25

# Non-standard status logged for turns abandoned by the client
CLIENT_CLOSED_REQUEST = 499

# Global state (initialized on startup; tests may pre-populate it)
settings: Optional[RelaySettings] = None
session_backend: Optional[SessionBackend] = None
orchestrator: Optional[ConversationOrchestrator] = None
request_validator: Optional[RequestValidator] = None
_purge_task: Optional[asyncio.Task] = None


def get_settings() -> RelaySettings:
    """Get relay settings.

    Raises:
        HTTPException: If settings not loaded
    """
    if settings is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Settings not loaded",
        )
    return settings


def _current_session_backend() -> Optional[SessionBackend]:
    return session_backend


def _current_session_settings() -> SessionSettings:
    return settings.session if settings is not None else SessionSettings()


# Initialize FastAPI app
app = FastAPI(
    title="SMS Relay",
    description="Relays SMS conversations to a chat completion model",
    version="0.1.0",
)

app.add_middleware(
    SessionMiddleware,
    backend_provider=_current_session_backend,
    settings_provider=_current_session_settings,
)


def get_orchestrator() -> ConversationOrchestrator:
    """Get conversation orchestrator.

    Raises:
        HTTPException: If orchestrator not initialized
    """
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized",
        )
    return orchestrator


def get_session(request: Request) -> Session:
    """Get the session attached by SessionMiddleware.

    Raises:
        HTTPException: If the session store is not initialized
    """
    session = getattr(request.state, "session", None)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session store not initialized",
        )
    return session


async def verify_twilio_signature(request: Request) -> None:
    """Reject webhook calls that Twilio did not sign.

    Raises:
        HTTPException: 403 on a missing or invalid signature, 503 if
            validation is enabled but no auth token is configured
    """
    relay_settings = get_settings()
    if not relay_settings.twilio.validate_requests:
        return

    if request_validator is None:
        logger.error("Request validation enabled but no Twilio auth token configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Request validation not configured",
        )

    form = await request.form()
    url = public_url(request, relay_settings.twilio.trust_forwarded_headers)
    signature = request.headers.get(SIGNATURE_HEADER, "")
    params = {key: value for key, value in form.items() if isinstance(value, str)}

    if not is_valid_signature(request_validator, url, params, signature):
        logger.warning("Rejected webhook call with invalid signature", extra={"url": url})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid Twilio signature",
        )


async def _purge_sessions_periodically(backend: SessionBackend, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(backend.purge_expired)
        except Exception as e:
            logger.error("Session purge failed", extra={"error": str(e)}, exc_info=True)


async def _cancel_on_disconnect(request: Request, turn: asyncio.Task) -> bool:
    """Cancel the turn if the client goes away before it finishes.

    Returns:
        True if the turn was cancelled because of a disconnect
    """
    while not turn.done():
        if await request.is_disconnected():
            turn.cancel()
            return True
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL_SECONDS)
    return False


@app.on_event("startup")
async def startup_event():
    """Initialize application state on startup."""
    global settings, session_backend, orchestrator, request_validator, _purge_task

    if settings is None:
        settings = load_settings()
    LoggerManager.configure(level=settings.logging.level, log_dir=settings.logging.log_dir)

    if session_backend is None:
        session_backend = build_session_backend(settings.session)
    if orchestrator is None:
        try:
            orchestrator = build_orchestrator(settings)
        except (CompletionServiceError, ValueError) as e:
            # Served as 503 on /message until credentials are configured
            logger.error("Orchestrator not initialized", extra={"error": str(e)})
    if request_validator is None and settings.twilio.auth_token:
        request_validator = RequestValidator(settings.twilio.auth_token)

    _purge_task = asyncio.create_task(
        _purge_sessions_periodically(session_backend, SESSION_PURGE_INTERVAL_SECONDS)
    )

    logger.info(
        "API started",
        extra={
            "model": settings.openai.model_name,
            "session_backend": settings.session.backend,
            "validate_requests": settings.twilio.validate_requests,
        },
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    global _purge_task

    if _purge_task is not None:
        _purge_task.cancel()
        _purge_task = None
    if session_backend is not None:
        session_backend.close()
    if orchestrator is not None:
        await orchestrator.close()
    logger.info("API shutdown")


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint.

    Returns:
        HealthResponse with status of the orchestrator and session store
    """
    orchestrator_ready = orchestrator is not None
    session_store_ok = session_backend is not None

    if orchestrator_ready and session_store_ok:
        overall_status = "healthy"
    elif orchestrator_ready or session_store_ok:
        overall_status = "degraded"
    else:
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        orchestrator_ready=orchestrator_ready,
        session_store_ok=session_store_ok,
    )


@app.post(
    "/message",
    response_class=Response,
    dependencies=[Depends(verify_twilio_signature)],
    responses={
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def receive_message(
    request: Request,
    background_tasks: BackgroundTasks,
    sender: str = Form(..., alias="From"),
    recipient: str = Form(..., alias="To"),
    body: str = Form("", alias="Body"),
    session: Session = Depends(get_session),
    relay: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Twilio inbound SMS webhook.

    Twilio expects an answer within 10 seconds, so reply chunks are sent by a
    background task after the (empty) response has gone out.

    The turn is abandoned if Twilio drops the connection first: the completion
    is cancelled, no reply is scheduled and the history is left as it was.

    Returns:
        Empty 200 response on every handled path, including reset; 499 if
        the client disconnected before the turn finished

    Raises:
        HTTPException: 502 if the chat completion service fails
    """
    await run_in_threadpool(session.load)

    message = InboundSms(sender=sender, recipient=recipient, body=body)
    turn = asyncio.create_task(
        relay.handle_message(message, session, schedule=background_tasks.add_task)
    )
    watcher = asyncio.create_task(_cancel_on_disconnect(request, turn))
    try:
        result = await turn
    except asyncio.CancelledError:
        if not (watcher.done() and watcher.result()):
            raise
        logger.warning(
            "Client disconnected; turn abandoned",
            extra={"session_id": session.session_id},
        )
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except CompletionServiceError as e:
        logger.error(
            "Chat completion failed; no reply will be sent",
            extra={"session_id": session.session_id, "error": str(e)},
            exc_info=True,
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Chat completion service unavailable",
        )
    finally:
        watcher.cancel()

    logger.info(
        "Webhook handled",
        extra={
            "session_id": session.session_id,
            "outcome": result.outcome.value,
            "chunk_count": len(result.reply_chunks),
        },
    )
    return Response(status_code=status.HTTP_200_OK)
