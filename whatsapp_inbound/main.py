import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Literal, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from whatsapp_inbound.config import settings
from whatsapp_inbound.logging_utils import RequestLoggingMiddleware, log_context, log_webhook_data, setup_logging
from whatsapp_inbound.media import MediaRelocator, get_media_relocator
from whatsapp_inbound.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_webhook_outcome,
    record_webhook_processing,
)
from whatsapp_inbound.processor import process_webhook_payload
from whatsapp_inbound.schemas import (
    ConversationResponse,
    ConversationsListResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
    WebhookAckResponse,
    WebhookPayload,
)
from whatsapp_inbound.storage import (
    SessionLocal,
    check_db_health,
    get_conversations,
    get_db,
    get_messages,
    get_stats,
    init_db,
)
from whatsapp_inbound.utils import verify_webhook_signature

WHATSAPP_OBJECT = "whatsapp_business_account"

# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="WhatsApp Inbound Webhook",
    description="Ingests WhatsApp Cloud API webhooks into CRM conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


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
    2. WHATSAPP_APP_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_APP_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WHATSAPP_APP_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

def run_webhook_processing(payload: dict, media_relocator: MediaRelocator, request_id: Optional[str] = None) -> None:
    """Background task: process a verified payload with its own session."""
    start_time = time.time()
    with log_context(request_id=request_id):
        try:
            with SessionLocal() as db:
                process_webhook_payload(db, payload, media_relocator)
        except Exception:
            logger.exception("Webhook processing error")
        finally:
            record_webhook_processing(time.time() - start_time)


@app.get(
    "/webhook",
    response_class=PlainTextResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Verification failed"},
        500: {"model": ErrorResponse, "description": "Verify token not configured"},
    },
)
async def verify_webhook(
    request: Request,
    hub_mode: Annotated[Optional[str], Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[Optional[str], Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[Optional[str], Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Webhook URL verification performed by Meta when the webhook is configured.
    Echoes hub.challenge as plain text when the verify token matches.
    """
    if not settings.WEBHOOK_VERIFY_TOKEN:
        logger.error("WEBHOOK_VERIFY_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error"
        )

    if hub_mode == "subscribe" and hub_verify_token == settings.WEBHOOK_VERIFY_TOKEN:
        logger.info("Webhook verification successful")
        log_webhook_data(request, result="verified")
        return PlainTextResponse(hub_challenge or "", status_code=status.HTTP_200_OK)

    logger.error("Webhook verification failed - invalid token")
    log_webhook_data(request, result="verification_failed")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Verification failed"
    )


@app.post(
    "/webhook",
    response_model=WebhookAckResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Undecodable or foreign payload"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    }
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Annotated[Optional[str], Header(alias="X-Hub-Signature-256")] = None,
    media_relocator: MediaRelocator = Depends(get_media_relocator),
) -> WebhookAckResponse:
    """
    Receive messages and status updates from the WhatsApp Cloud API.

    - Verifies X-Hub-Signature-256 (HMAC-SHA256 of the raw body, app secret)
    - Acknowledges right away; events are processed in a background task
    - Inner event failures never change the response, so Meta does not retry
    """
    # Signature must be computed over the exact bytes received
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if not verify_webhook_signature(raw_body, x_hub_signature_256, settings.WHATSAPP_APP_SECRET):
        logger.error("Invalid webhook signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        envelope = WebhookPayload.model_validate_json(raw_body)
    except ValidationError as e:
        logger.error(f"Invalid payload: {e.error_count()} validation errors")
        record_webhook_outcome("invalid_payload")
        log_webhook_data(request, result="invalid_payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid payload"
        )

    if envelope.object != WHATSAPP_OBJECT:
        logger.error(f"Invalid payload object: {envelope.object}")
        record_webhook_outcome("invalid_payload")
        log_webhook_data(request, result="invalid_payload", payload_object=envelope.object)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid payload"
        )

    background_tasks.add_task(
        run_webhook_processing,
        envelope.model_dump(),
        media_relocator,
        getattr(request.state, "request_id", None),
    )

    record_webhook_outcome("received")
    log_webhook_data(request, result="received", payload_object=envelope.object)
    return WebhookAckResponse(status="received")


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of conversations to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    account_id: Annotated[Optional[str], Query(description="Filter by account")] = None,
    unread: Annotated[Optional[bool], Query(description="Filter by unread flag")] = None,
    db: Session = Depends(get_db)
) -> ConversationsListResponse:
    """List conversations, most recently active first."""
    conversations, total = get_conversations(
        db=db,
        limit=limit,
        offset=offset,
        account_id=account_id,
        unread=unread,
    )

    return ConversationsListResponse(
        data=[ConversationResponse.model_validate(conv) for conv in conversations],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    conversation_id: Annotated[Optional[str], Query(description="Filter by conversation")] = None,
    status_param: Annotated[
        Optional[Literal["pending", "sent", "delivered", "read", "failed"]],
        Query(alias="status", description="Filter by delivery status")
    ] = None,
    direction: Annotated[Optional[Literal["inbound", "outbound"]], Query(description="Filter by direction")] = None,
    q: Annotated[Optional[str], Query(description="Free-text search in message body (case-insensitive)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List stored messages with pagination and filtering.

    Ordering: created_at ASC, id ASC (deterministic).
    """
    messages, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        conversation_id=conversation_id,
        status=status_param,
        direction=direction,
        q=q,
    )

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """Message counts by status and type, conversation counts."""
    return StatsResponse(**get_stats(db))


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
