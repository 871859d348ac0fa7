import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, status, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

from app import conversation_router
from app.config import settings
from app.envelopes import Attachment
from app.errors import AuthError, ServiceError, ValidationError
from app.ingestion import ingest_event, send_message
from app.logging_utils import setup_logging, RequestLoggingMiddleware, attach_log_fields
from app.media import ObjectStorage, get_media_storage
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.outbox import HttpTriggerDispatcher, OutboxWorker
from app.profiles import ProfileLookup, get_profile_lookup
from app.storage import (
    SessionLocal,
    check_db_health,
    get_conversation_messages,
    get_conversations,
    get_db,
    init_db,
)
from app.utils import verify_hmac_signature
from app.schemas import (
    ClaimRequest,
    ClaimResponse,
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, start the trigger outbox worker if enabled
    - Shutdown: stop the worker
    """
    init_db()

    worker_task = None
    if settings.OUTBOX_WORKER_ENABLED:
        worker = OutboxWorker(
            session_factory=SessionLocal,
            dispatcher=HttpTriggerDispatcher.from_settings(settings),
            batch_size=settings.OUTBOX_BATCH_SIZE,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
            backoff_base_seconds=settings.OUTBOX_BACKOFF_BASE_SECONDS,
            poll_interval_seconds=settings.OUTBOX_POLL_INTERVAL_SECONDS,
            lease_seconds=settings.OUTBOX_LEASE_SECONDS,
        )
        worker_task = asyncio.create_task(worker.run_forever())

    yield

    if worker_task is not None:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Chat Ingestion API",
    description="Ingests chat channel webhooks and routes them into agent conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

if settings.MEDIA_STORAGE_BACKEND == "local":
    app.mount("/media", StaticFiles(directory=settings.MEDIA_STORAGE_DIR, check_dir=False), name="media")


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness check - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness check - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature or channel credential"},
        404: {"model": ErrorResponse, "description": "Unknown or inactive instance"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        500: {"model": ErrorResponse, "description": "Internal error, safe to retry"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db),
    lookup: ProfileLookup = Depends(get_profile_lookup),
    storage: ObjectStorage = Depends(get_media_storage),
) -> WebhookResponse:
    """
    Ingest one provider event.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Classifies the event (message, connection, unrecognized)
    - Idempotent: a redelivered message returns 200 without side effects

    Headers:
        - Content-Type: application/json
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await request.body()

    try:
        if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
            logger.error("Missing or invalid X-Signature header")
            raise AuthError("invalid signature")

        try:
            body_dict = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError(f"Invalid JSON: {e}")

        # Identity lookups and media uploads block, keep them off the event loop
        outcome = await run_in_threadpool(ingest_event, db, body_dict, lookup, storage)
    except ServiceError as exc:
        logger.error(f"Webhook rejected ({exc.status_code}): {exc.detail}")
        record_webhook_outcome(exc.result)
        attach_log_fields(request, result=exc.result)
        raise

    logger.info(f"Webhook processed: event={outcome.event}, result={outcome.result}")
    record_webhook_outcome(outcome.result)
    attach_log_fields(
        request,
        event=outcome.event,
        dedup_id=outcome.dedup_id,
        dup=outcome.duplicate,
        result=outcome.result,
        conversation_id=outcome.conversation_id,
    )

    return WebhookResponse(status="ok", result=outcome.result)


# =============================================================================
# Outbound Compose Route
# =============================================================================

@app.post(
    "/messages/send",
    response_model=SendMessageResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Unknown or inactive instance"},
        422: {"description": "Validation error"},
    }
)
def compose_message(
    payload: SendMessageRequest,
    request: Request,
    db: Session = Depends(get_db),
    lookup: ProfileLookup = Depends(get_profile_lookup),
    storage: ObjectStorage = Depends(get_media_storage),
) -> SendMessageResponse:
    """Append an agent-composed message to the target's active conversation."""
    attachment = Attachment(**payload.attachment.model_dump()) if payload.attachment else None
    result = send_message(
        db,
        instance_name=payload.instance,
        to=payload.to,
        body=payload.body,
        lookup=lookup,
        storage=storage,
        attachment=attachment,
        message_type=payload.message_type,
        agent_id=payload.agent_id,
        sender_name=payload.sender_name,
        idempotency_key=payload.idempotency_key,
    )
    attach_log_fields(
        request,
        conversation_id=result.conversation.id,
        dedup_id=result.message.external_id,
        dup=not result.was_new,
    )
    return SendMessageResponse(
        conversation_id=result.conversation.id,
        message_id=result.message.id,
        created=result.was_new,
        media_url=result.message.media_url,
    )


# =============================================================================
# Conversation Routes (agent UI collaborator)
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
def list_conversations(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of conversations to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    status_param: Annotated[str | None, Query(alias="status", pattern="^(pending|open|closed)$")] = None,
    instance_id: Annotated[str | None, Query(description="Filter by instance id")] = None,
    agent_id: Annotated[str | None, Query(description="Filter by assigned agent")] = None,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """List conversations, most recently active first."""
    conversations, total = get_conversations(
        db=db,
        limit=limit,
        offset=offset,
        status=status_param,
        instance_id=instance_id,
        assigned_agent_id=agent_id,
    )
    return ConversationsListResponse(
        data=[ConversationResponse.model_validate(conv) for conv in conversations],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/conversations/{conversation_id}/messages", response_model=MessagesListResponse)
def list_conversation_messages(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """List the messages of a conversation, oldest first."""
    conversation_router.get_conversation(db, conversation_id)
    messages, total = get_conversation_messages(db, conversation_id, limit=limit, offset=offset)
    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.post("/conversations/{conversation_id}/claim", response_model=ClaimResponse)
def claim_conversation(
    conversation_id: str,
    payload: ClaimRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ClaimResponse:
    """
    Claim an unassigned conversation.

    Always 200 for an existing conversation: when another agent already
    holds it, `claimed` is false and `assigned_agent_id` names the holder.
    """
    result = conversation_router.claim(db, conversation_id, payload.agent_id)
    attach_log_fields(request, conversation_id=conversation_id, claimed=result.claimed)
    return ClaimResponse(
        conversation_id=conversation_id,
        claimed=result.claimed,
        assigned_agent_id=result.assigned_agent_id,
        status=result.conversation.status,
    )


@app.post("/conversations/{conversation_id}/close", response_model=ConversationResponse)
def close_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """Close a conversation; the target's next message opens a new one."""
    conversation = conversation_router.close(db, conversation_id)
    return ConversationResponse.model_validate(conversation)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
