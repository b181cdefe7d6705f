import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from wa_ingest.config import settings
from wa_ingest.contacts import get_contact
from wa_ingest.events import OutgoingExtras
from wa_ingest.ingest import ingest_events
from wa_ingest.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from wa_ingest.messages import insert_outgoing
from wa_ingest.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from wa_ingest.normalizer import InvalidNotificationError, normalize
from wa_ingest.queries import get_conversation, get_message, get_stats, list_contacts, list_messages
from wa_ingest.schemas import (
    ContactResponse,
    ContactsListResponse,
    ConversationHistoryResponse,
    ErrorResponse,
    HealthResponse,
    MessageDetailResponse,
    MessageResponse,
    MessagesListResponse,
    OutgoingMessageRequest,
    OutgoingMessageResponse,
    SelectionResponse,
    StatsResponse,
    StatusEventResponse,
    WebhookResponse,
)
from wa_ingest.storage import StorageError, check_db_health, get_db, init_db
from wa_ingest.utils import verify_api_key, verify_hmac_signature


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
    title="WhatsApp Webhook Ingestion API",
    description="Stores WhatsApp Cloud API webhook events as a queryable message record",
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
    1. VERIFY_TOKEN is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="VERIFY_TOKEN not configured")

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

@app.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Subscription handshake: echo hub.challenge when the token matches.
    """
    if not mode or not token or not challenge:
        logger.warning("Webhook verification failed: missing parameters")
        return PlainTextResponse("Missing parameters", status_code=status.HTTP_400_BAD_REQUEST)

    if mode == "subscribe" and verify_api_key(token, settings.VERIFY_TOKEN):
        logger.info("Webhook verified successfully")
        return PlainTextResponse(challenge, status_code=status.HTTP_200_OK)

    logger.warning("Webhook verification failed: invalid token")
    return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Not a WhatsApp notification"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Invalid JSON"},
    }
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """
    Ingest a WhatsApp Cloud API notification.

    - Verifies X-Hub-Signature-256 when APP_SECRET is configured
    - Rejects bodies that are not whatsapp_business_account notifications
    - Otherwise always acknowledges with 200: per-item persistence failures
      are logged and counted, never reported back to the sender
    """
    logger.info("Webhook request received")

    raw_body = await request.body()

    if settings.APP_SECRET and not verify_hmac_signature(raw_body, x_hub_signature_256, settings.APP_SECRET):
        logger.error("Invalid or missing X-Hub-Signature-256")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )

    try:
        events = normalize(payload)
    except InvalidNotificationError as e:
        logger.error(f"Rejected notification: {e}")
        record_webhook_outcome("invalid_object")
        log_webhook_data(request, result="invalid_object")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook object"
        )

    summary = None
    try:
        summary = ingest_events(db, events).as_dict()
    except Exception:
        # Acknowledge anyway; the sender would only retry the whole batch
        logger.exception("Webhook processing error")

    record_webhook_outcome("accepted")
    log_webhook_data(request, result="accepted", summary=summary)
    return WebhookResponse(status="ok")


# =============================================================================
# Data Routes
# =============================================================================

async def require_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Accept X-API-Key or Authorization: Bearer; open when API_KEY is unset."""
    if not settings.API_KEY:
        return

    provided = x_api_key
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization[len("Bearer "):]

    if not provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API key is required")
    if not verify_api_key(provided, settings.API_KEY):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


data = APIRouter(prefix="/data", dependencies=[Depends(require_api_key)])


@data.get("/stats", response_model=StatsResponse)
async def stats(db: Session = Depends(get_db)) -> StatsResponse:
    """Contact and message counts, with a per-type breakdown."""
    return StatsResponse(**get_stats(db))


@data.get("/contacts", response_model=ContactsListResponse)
async def contacts(
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db)
) -> ContactsListResponse:
    """Contacts, most recently active first."""
    rows = list_contacts(db, limit=limit, offset=offset)
    return ContactsListResponse(
        data=[ContactResponse.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )


@data.get("/contacts/{wa_id}", response_model=ContactResponse, responses={404: {"model": ErrorResponse}})
async def contact(wa_id: str, db: Session = Depends(get_db)) -> ContactResponse:
    row = get_contact(db, wa_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
    return ContactResponse.model_validate(row)


@data.get("/messages", response_model=MessagesListResponse)
async def messages(
    contact: Annotated[str | None, Query(description="Filter by contact wa_id")] = None,
    direction: Annotated[Literal["incoming", "outgoing"] | None, Query()] = None,
    kind: Annotated[str | None, Query(alias="type", description="Filter by message type")] = None,
    start_date: Annotated[str | None, Query(description="timestamp >= start_date (ISO-8601 UTC)")] = None,
    end_date: Annotated[str | None, Query(description="timestamp <= end_date (ISO-8601 UTC)")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List stored messages, newest first.

    total counts every message matching the filters, ignoring limit/offset.
    """
    rows, total = list_messages(
        db,
        contact=contact,
        direction=direction,
        kind=kind,
        start=start_date,
        end=end_date,
        limit=limit,
        offset=offset,
    )
    return MessagesListResponse(
        data=[MessageResponse.model_validate(row) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@data.post("/messages/outgoing", response_model=OutgoingMessageResponse, responses={500: {"model": ErrorResponse}})
async def record_outgoing(body: OutgoingMessageRequest, db: Session = Depends(get_db)) -> OutgoingMessageResponse:
    """
    Record a message sent to a contact by another component, so that later
    status callbacks for it reconcile against a stored row.
    """
    extras = OutgoingExtras(
        media_id=body.media_id,
        media_mime_type=body.media_mime_type,
        caption=body.caption,
        filename=body.filename,
        latitude=body.latitude,
        longitude=body.longitude,
        location_name=body.location_name,
        location_address=body.location_address,
        reply_to_message_id=body.reply_to,
    )
    try:
        message, is_duplicate = insert_outgoing(
            db,
            wa_message_id=body.wa_message_id,
            to_address=body.to,
            kind=body.type,
            content=body.content,
            extras=extras,
        )
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return OutgoingMessageResponse(duplicate=is_duplicate, message=MessageResponse.model_validate(message))


@data.get("/messages/{wa_message_id}", response_model=MessageDetailResponse, responses={404: {"model": ErrorResponse}})
async def message_detail(wa_message_id: str, db: Session = Depends(get_db)) -> MessageDetailResponse:
    """One message with its contact, interactive selection and status history."""
    found = get_message(db, wa_message_id)
    if found is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")

    message, history = found
    return MessageDetailResponse(
        **MessageResponse.model_validate(message).model_dump(),
        selection=SelectionResponse.model_validate(message.selection) if message.selection else None,
        status_history=[StatusEventResponse.model_validate(row) for row in history],
    )


@data.get("/conversations/{wa_id}", response_model=ConversationHistoryResponse)
async def conversation(
    wa_id: str,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    db: Session = Depends(get_db)
) -> ConversationHistoryResponse:
    """Full message history with one contact, newest first."""
    rows = get_conversation(db, wa_id, limit=limit)
    return ConversationHistoryResponse(
        wa_id=wa_id,
        data=[MessageResponse.model_validate(row) for row in rows],
    )


app.include_router(data)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
