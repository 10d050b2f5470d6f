import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chatrelay.auth import TokenVerifier, bearer_token
from chatrelay.config import settings
from chatrelay.dispatcher import Dispatcher
from chatrelay.errors import ChatRelayError, InvalidToken, Malformed, Overflow, Unauthorized
from chatrelay.hub import ConnectionHub, ConnectionState
from chatrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_connection_event, log_post_data
from chatrelay.metrics import get_metrics, get_metrics_content_type
from chatrelay.registry import ChannelRegistry
from chatrelay.schemas import (
    ChannelsListResponse,
    ClientFrame,
    ErrorResponse,
    HealthResponse,
    Message,
    MessagesListResponse,
    PostMessageRequest,
    StatsResponse,
)
from chatrelay.storage import init_db, check_db_health, MessageStore


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables and wire store, registry, hub and dispatcher
    - Shutdown: disconnect any remaining connections
    """
    init_db()

    store = MessageStore()
    hub = ConnectionHub(
        store,
        queue_capacity=settings.QUEUE_CAPACITY,
        catchup_page_size=settings.CATCHUP_PAGE_SIZE,
        catchup_drain_timeout=settings.CATCHUP_DRAIN_TIMEOUT,
    )
    app.state.registry = ChannelRegistry()
    app.state.verifier = TokenVerifier(settings.AUTH_SECRET)
    app.state.dispatcher = Dispatcher(
        store,
        hub,
        app.state.registry,
        max_content_length=settings.MAX_CONTENT_LENGTH,
        history_max_limit=settings.HISTORY_MAX_LIMIT,
    )
    yield

    hub.disconnect_all()


app = FastAPI(
    title="Chat Relay",
    description="Real-time message delivery and fan-out for chat channels",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ChatRelayError)
async def chat_relay_error_handler(request: Request, exc: ChatRelayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_registry(request: Request) -> ChannelRegistry:
    return request.app.state.registry


def current_user(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Resolve the Authorization bearer token to a user id."""
    return request.app.state.verifier.verify(bearer_token(authorization))


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. AUTH_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.AUTH_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="AUTH_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/channels/{channel_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid token"},
        403: {"model": ErrorResponse, "description": "Not a member, or muted"},
        404: {"model": ErrorResponse, "description": "Channel not found"},
        422: {"model": ErrorResponse, "description": "Malformed content"},
        503: {"model": ErrorResponse, "description": "Message store unavailable"},
    }
)
async def post_message(
    channel_id: str,
    body: PostMessageRequest,
    request: Request,
    user_id: str = Depends(current_user),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Message:
    """
    Persist a message and broadcast it to the channel's live subscribers.

    The response carries the assigned seq; the same message is available
    through history and catch-up from that point on.
    """
    try:
        message = await dispatcher.post_message(channel_id, user_id, body.content)
    except ChatRelayError as e:
        log_post_data(request, channel_id, result=e.code)
        raise

    log_post_data(request, channel_id, seq=message.seq, result="created")
    return message


@app.get(
    "/channels/{channel_id}/messages",
    response_model=MessagesListResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member"},
        404: {"model": ErrorResponse, "description": "Channel not found"},
    }
)
async def list_messages(
    channel_id: str,
    after_seq: Annotated[int, Query(ge=0, description="Return messages with seq greater than this")] = 0,
    limit: Annotated[int, Query(ge=1, le=settings.HISTORY_MAX_LIMIT, description="Maximum number of messages")] = settings.HISTORY_DEFAULT_LIMIT,
    user_id: str = Depends(current_user),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> MessagesListResponse:
    """
    Page through a channel's history in seq order. Clients backfill after a
    reconnect by passing the last seq they saw as after_seq.
    """
    messages = dispatcher.get_history(channel_id, after_seq, limit, user_id=user_id)
    return MessagesListResponse(
        data=messages,
        channel_id=channel_id,
        after_seq=after_seq,
        limit=limit,
        last_seq=dispatcher.store.last_seq(channel_id),
    )


@app.get(
    "/parents/{parent_id}/channels",
    response_model=ChannelsListResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Not a member"},
        404: {"model": ErrorResponse, "description": "Chat or group not found"},
    }
)
async def list_channels(
    parent_id: str,
    user_id: str = Depends(current_user),
    registry: ChannelRegistry = Depends(get_registry),
) -> ChannelsListResponse:
    """List the channels of a chat or group the caller belongs to."""
    channels = registry.list_channels(parent_id)
    if not registry.is_parent_member(user_id, parent_id):
        raise Unauthorized(f"user {user_id} is not a member of {parent_id}")
    return ChannelsListResponse(data=channels, parent_id=parent_id)


# =============================================================================
# Stats and Metrics Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(dispatcher: Dispatcher = Depends(get_dispatcher)) -> StatsResponse:
    """Stored message count and live connection/subscription counters."""
    return StatsResponse(total_messages=dispatcher.store.count(), **dispatcher.hub.stats())


@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# WebSocket Route
# =============================================================================

def _error_frame(error: ChatRelayError, channel_id: str | None = None) -> dict:
    frame = {"type": "error", "code": error.code, "detail": error.detail}
    if channel_id is not None:
        frame["channel_id"] = channel_id
    return frame


async def _handle_frame(dispatcher: Dispatcher, connection_id: str, user_id: str, frame: ClientFrame) -> None:
    hub = dispatcher.hub

    if frame.type == "ping":
        hub.send_control(connection_id, {"type": "pong"})
        return

    if not frame.channel_id:
        raise Malformed(f"{frame.type} requires channel_id")

    if frame.type == "subscribe":
        await dispatcher.subscribe(connection_id, user_id, frame.channel_id, frame.last_seen_seq)
    elif frame.type == "unsubscribe":
        dispatcher.unsubscribe(connection_id, frame.channel_id)
        hub.send_control(connection_id, {"type": "unsubscribed", "channel_id": frame.channel_id})
    elif frame.type == "post":
        message = await dispatcher.post_message(frame.channel_id, user_id, frame.content)
        hub.send_control(connection_id, {"type": "ack", "message": message.model_dump()})


async def _receive_frames(websocket: WebSocket, dispatcher: Dispatcher, connection_id: str, user_id: str) -> None:
    """Read client frames until the client goes away."""
    hub = dispatcher.hub

    while True:
        try:
            raw = await websocket.receive_text()
        except WebSocketDisconnect:
            return

        try:
            frame = ClientFrame.model_validate_json(raw)
        except ValidationError as e:
            hub.send_control(connection_id, _error_frame(Malformed(f"invalid frame: {e.error_count()} errors")))
            continue

        try:
            await _handle_frame(dispatcher, connection_id, user_id, frame)
        except ChatRelayError as e:
            logger.info(f"Frame {frame.type} on connection {connection_id} rejected: {e.code}")
            hub.send_control(connection_id, _error_frame(e, frame.channel_id))


@app.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Annotated[str | None, Query()] = None,
):
    """
    Persistent connection for live delivery.

    The client subscribes to channels with the last seq it has seen and
    receives missed messages first, then live ones. A client that cannot
    keep up is disconnected with close code 1013.
    """
    try:
        user_id = websocket.app.state.verifier.verify(token)
    except InvalidToken:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    dispatcher: Dispatcher = websocket.app.state.dispatcher
    hub = dispatcher.hub
    connection_id = hub.connect(user_id)
    connection = hub.get_connection(connection_id)
    log_connection_event("Connection opened", connection_id, user_id)

    sender = asyncio.create_task(hub.run_sender(connection_id, websocket.send_json))
    receiver = asyncio.create_task(_receive_frames(websocket, dispatcher, connection_id, user_id))

    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Connection {connection_id} task failed: {task.exception()}")
    finally:
        subscriptions = len(connection.subscriptions)
        hub.disconnect(connection_id)
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)

    overflowed = connection.state is ConnectionState.OVERFLOWED
    log_connection_event(
        "Connection closed",
        connection_id,
        user_id,
        level=logging.WARNING if overflowed else logging.INFO,
        state=connection.state.value,
        subscriptions=subscriptions,
        duration_ms=round((time.time() - connection.connected_at) * 1000, 2),
    )

    if overflowed:
        try:
            await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason=Overflow.code)
        except Exception as e:
            logger.debug(f"Close of overflowed connection {connection_id} failed: {e}")
