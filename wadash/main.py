import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional
from urllib.parse import parse_qsl

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from wadash.cache import MessageCache
from wadash.config import settings
from wadash.errors import SyncError, UpstreamError
from wadash.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from wadash.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from wadash.notifier import NUMBER_BLOCKED, ChangeNotifier
from wadash.query import ConversationQuery
from wadash.schemas import (
    BlockedNumbersResponse,
    BlockNumberRequest,
    BlockNumberResponse,
    CacheStatusResponse,
    CheckBlockedResponse,
    ClearCacheResponse,
    ConversationMessagesResponse,
    ConversationsListResponse,
    ConversationSummary,
    ErrorResponse,
    HealthResponse,
    Message,
    StatsResponse,
    SyncEvent,
    SyncRequest,
    SyncResponse,
    WsCommand,
)
from wadash.storage import (
    init_db,
    check_db_health,
    get_db,
    block_number,
    unblock_number,
    list_blocked_numbers,
    is_blocked,
)
from wadash.sync import SyncController, SyncResult
from wadash.utils import twiml_response, verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the cache, warm it from the latest backup
      or a full sync, start the sync timers
    - Shutdown: stop timers and wait for pending backup writes
    """
    init_db()

    cache = MessageCache()
    notifier = ChangeNotifier()
    sync = SyncController.from_settings(settings, cache, notifier)
    app.state.cache = cache
    app.state.notifier = notifier
    app.state.sync = sync
    app.state.query = ConversationQuery(cache, on_empty=sync.request_full_sync)

    if sync.demo_mode:
        logger.warning(
            "Demo mode: TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are not set, serving fixture messages"
        )

    if settings.SYNC_ON_STARTUP:
        if not await sync.load_backup():
            logger.info("No backup found, running initial full sync")
            try:
                await sync.full_sync()
            except SyncError as e:
                logger.error(f"Initial sync failed, continuing with partial cache: {e}")

    if settings.SCHEDULER_ENABLED:
        sync.start()

    yield

    await sync.stop()


app = FastAPI(
    title="WhatsApp Dashboard API",
    description="Cached, conversation-grouped view over a Twilio WhatsApp message log",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_sync(request: Request) -> SyncController:
    return request.app.state.sync


def get_query(request: Request) -> ConversationQuery:
    return request.app.state.query


def get_notifier(request: Request) -> ChangeNotifier:
    return request.app.state.notifier


def sync_response(result: SyncResult, sync: SyncController) -> SyncResponse:
    return SyncResponse(
        status="skipped" if result.skipped else "ok",
        mode=result.mode,
        added=result.added,
        total_messages=result.total_messages,
        conversations=result.conversations,
        last_sync=sync.last_sync_at,
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the blocklist database is reachable
    and its schema is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/api/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    partition: Annotated[
        Literal["all", "normal", "blocked"],
        Query(description="all, normal (not blocked) or blocked")
    ] = "all",
    query: ConversationQuery = Depends(get_query),
    sync: SyncController = Depends(get_sync),
    db: Session = Depends(get_db)
) -> ConversationsListResponse:
    """
    List conversations, newest last message first.

    Served straight from the cache; an empty cache triggers a background sync
    and returns an empty list.
    """
    blocked = set(list_blocked_numbers(db))
    conversations = query.list_conversations(partition, blocked)

    logger.info(f"GET /api/conversations: partition={partition}, returned {len(conversations)}")

    return ConversationsListResponse(
        conversations=[
            ConversationSummary(
                contact_number=c.contact_number,
                last_message=c.last_message,
                last_message_date=c.last_message_date,
                total_messages=c.total_messages,
                is_blocked=c.contact_number in blocked,
            )
            for c in conversations
        ],
        partition=partition,
        total_messages=query.cache.message_count,
        last_sync=sync.last_sync_at,
        is_live=not sync.demo_mode,
    )


@app.get("/api/conversation/{phone_number}", response_model=ConversationMessagesResponse)
async def get_conversation(
    phone_number: str,
    query: ConversationQuery = Depends(get_query),
) -> ConversationMessagesResponse:
    """
    Messages exchanged with one counterpart, oldest first.

    ``aggregated`` is false when the number has no conversation yet and the
    result came from scanning the raw message cache.
    """
    messages, aggregated = query.get_conversation(phone_number)
    logger.info(f"GET /api/conversation: {phone_number}, {len(messages)} messages, aggregated={aggregated}")

    return ConversationMessagesResponse(
        contact_number=phone_number,
        messages=messages,
        total_messages=len(messages),
        aggregated=aggregated,
    )


@app.get(
    "/api/message/{sid}",
    response_model=Message,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def get_message(
    sid: str,
    query: ConversationQuery = Depends(get_query),
    sync: SyncController = Depends(get_sync),
) -> Message:
    """Single message by sid, from the cache or else from the messaging API."""
    message = query.get_message(sid)
    if message is None:
        logger.debug(f"Message {sid} not cached, fetching upstream")
        try:
            message = await sync.source.fetch_message(sid)
        except UpstreamError as e:
            logger.error(f"Failed to fetch message {sid}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to fetch message details"
            )
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return message


# =============================================================================
# Cache & Sync Routes
# =============================================================================

@app.get("/api/cache-status", response_model=CacheStatusResponse)
async def cache_status(
    query: ConversationQuery = Depends(get_query),
    sync: SyncController = Depends(get_sync),
) -> CacheStatusResponse:
    return CacheStatusResponse(
        messages_in_cache=query.cache.message_count,
        conversations_in_cache=query.cache.conversation_count,
        last_sync=sync.last_sync_at,
        last_attempt=sync.last_attempt_at,
        is_updating=sync.in_progress,
        demo_mode=sync.demo_mode,
    )


@app.get("/api/stats", response_model=StatsResponse)
async def get_statistics(query: ConversationQuery = Depends(get_query)) -> StatsResponse:
    """
    Message-level analytics over the cache: totals, top contacts,
    counts by direction and status, and the timestamp range.
    """
    stats = query.stats()
    logger.info(f"GET /api/stats: {stats.total_messages} messages, {stats.conversations_count} conversations")
    return stats


@app.post(
    "/api/resync",
    response_model=SyncResponse,
    responses={500: {"model": ErrorResponse, "description": "Upstream fetch failed"}},
)
async def resync(
    payload: Optional[SyncRequest] = None,
    sync: SyncController = Depends(get_sync),
) -> SyncResponse:
    """
    Run a bounded full sync now.

    Body (optional): ``{"days": N}`` to override the default look-back window.
    Returns ``status: skipped`` if a sync is already running.
    """
    days = payload.days if payload else None
    logger.info(f"POST /api/resync: days={days}")
    try:
        result = await sync.full_sync(days=days)
    except SyncError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {e}"
        )
    return sync_response(result, sync)


@app.post(
    "/api/sync-today",
    response_model=SyncResponse,
    responses={500: {"model": ErrorResponse, "description": "Upstream fetch failed"}},
)
async def sync_today(sync: SyncController = Depends(get_sync)) -> SyncResponse:
    """Full sync of messages sent since midnight."""
    try:
        result = await sync.sync_today()
    except SyncError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sync failed: {e}"
        )
    return sync_response(result, sync)


@app.post("/api/clear-cache", response_model=ClearCacheResponse)
async def clear_cache(sync: SyncController = Depends(get_sync)) -> ClearCacheResponse:
    """
    Wipe the cache and all backup files, then start a fresh full sync in the
    background. Poll /api/cache-status or listen on /ws for completion.
    """
    logger.info("POST /api/clear-cache")
    sync.clear_and_resync()
    return ClearCacheResponse(sync_started=True)


# =============================================================================
# Blocklist Routes
# =============================================================================

@app.post(
    "/api/block-number",
    response_model=BlockNumberResponse,
    responses={400: {"model": ErrorResponse, "description": "Missing phone number"}},
)
async def block_number_route(
    payload: BlockNumberRequest,
    notifier: ChangeNotifier = Depends(get_notifier),
    db: Session = Depends(get_db)
) -> BlockNumberResponse:
    """Block or unblock a counterpart number."""
    phone_number = (payload.phone_number or "").strip()
    if not phone_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="phone_number is required"
        )

    if payload.action == "block":
        block_number(db, phone_number)
    else:
        unblock_number(db, phone_number)
    numbers = list_blocked_numbers(db)

    await notifier.emit(
        NUMBER_BLOCKED,
        phone_number=phone_number,
        action=payload.action,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    return BlockNumberResponse(
        action=payload.action,
        phone_number=phone_number,
        total_blocked=len(numbers),
        blocked_numbers=numbers,
    )


@app.get("/api/blocked-numbers", response_model=BlockedNumbersResponse)
async def blocked_numbers(db: Session = Depends(get_db)) -> BlockedNumbersResponse:
    numbers = list_blocked_numbers(db)
    return BlockedNumbersResponse(count=len(numbers), numbers=numbers)


@app.get("/api/check-blocked/{phone_number}", response_model=CheckBlockedResponse)
async def check_blocked(phone_number: str, db: Session = Depends(get_db)) -> CheckBlockedResponse:
    return CheckBlockedResponse(
        phone_number=phone_number,
        is_blocked=is_blocked(db, phone_number),
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# Inbound Webhook Route
# =============================================================================

@app.post(
    "/api/sms-webhook",
    responses={
        200: {"content": {"text/xml": {}}, "description": "TwiML response"},
        400: {"model": ErrorResponse, "description": "Missing From"},
        403: {"model": ErrorResponse, "description": "Invalid signature"},
    },
)
async def sms_webhook(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    sync: SyncController = Depends(get_sync),
    db: Session = Depends(get_db)
) -> Response:
    """
    Inbound message notification from the messaging API (form-encoded).

    - Blocked sender: answer with an auto-reply TwiML message
    - Anyone else: empty TwiML, and an incremental sync is kicked off so the
      new message shows up in the cache
    """
    raw_body = await request.body()
    params = dict(parse_qsl(raw_body.decode("utf-8"), keep_blank_values=True))
    sender = params.get("From")

    if settings.WEBHOOK_VERIFY_SIGNATURE and settings.TWILIO_AUTH_TOKEN:
        if not verify_twilio_signature(str(request.url), params, x_twilio_signature or "", settings.TWILIO_AUTH_TOKEN):
            logger.error("Invalid webhook signature")
            record_webhook_outcome("invalid_signature")
            log_webhook_data(request, sender=sender, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="invalid signature"
            )

    if not sender:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="From is required"
        )

    if is_blocked(db, sender):
        logger.info(f"Message from blocked number: {sender}")
        record_webhook_outcome("blocked")
        log_webhook_data(request, sender=sender, result="blocked")
        return Response(content=twiml_response(settings.BLOCKED_AUTO_REPLY), media_type="text/xml")

    record_webhook_outcome("accepted")
    log_webhook_data(request, sender=sender, result="accepted")
    sync.request_incremental_sync()
    return Response(content=twiml_response(), media_type="text/xml")


# =============================================================================
# Push Channel
# =============================================================================

@app.websocket("/ws")
async def push_channel(websocket: WebSocket):
    """
    Push channel for cache change events.

    Server events: connection-status, messages-updated, new-messages,
    sync-progress, number-blocked, plus replies to commands.
    Client commands: request-full-update, check-new-messages.
    """
    await websocket.accept()
    sync: SyncController = websocket.app.state.sync
    notifier: ChangeNotifier = websocket.app.state.notifier

    async def send(event_type: str, **data):
        await websocket.send_json(SyncEvent(type=event_type, data=data).model_dump(mode="json"))

    async def forward(event: SyncEvent):
        await websocket.send_json(event.model_dump(mode="json"))

    subscription_id = notifier.subscribe(forward)
    logger.info(f"Push client connected: subscription {subscription_id}")

    try:
        await send(
            "connection-status",
            connected=True,
            messages_in_cache=sync.cache.message_count,
            conversations_in_cache=sync.cache.conversation_count,
            last_update=sync.last_sync_at,
            demo_mode=sync.demo_mode,
        )

        while True:
            raw = await websocket.receive_text()
            try:
                command = WsCommand.model_validate(json.loads(raw))
            except (ValueError, ValidationError):
                await send("error", detail="invalid command")
                continue

            try:
                if command.type == "request-full-update":
                    result = await sync.full_sync()
                    await send(
                        "full-update-complete",
                        skipped=result.skipped,
                        total_messages=result.total_messages,
                    )
                elif command.type == "check-new-messages":
                    result = await sync.incremental_sync()
                    await send("new-messages-checked", new_count=result.added, skipped=result.skipped)
                else:
                    await send("error", detail=f"unknown command: {command.type}")
            except SyncError as e:
                await send("update-error", detail=str(e))

    except WebSocketDisconnect:
        logger.info(f"Push client disconnected: subscription {subscription_id}")
    finally:
        notifier.unsubscribe(subscription_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Includes HTTP request counts and latency, webhook outcomes, sync runs by
    mode and outcome, and cache size gauges.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
