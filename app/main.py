import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.config import Settings, get_settings, settings
from app.identity import IdentityProfile, state_of
from app.storage import init_db, check_db_health, get_db, get_identity, list_identities, get_identity_stats
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_request_data
from app.metrics import record_relay_send, record_webhook_outcome, get_metrics, get_metrics_content_type
from app.relay import OutboundRelay
from app.webhook import WebhookHandler
from app.schemas import (
    HealthResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookAckResponse,
    ErrorResponse,
    TelegramUserResponse,
    TelegramUsersListResponse,
    StatsResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN is not set")
    yield


app = FastAPI(
    title="Telegram Relay API",
    description="Outbound message relay and inbound webhook for Telegram contacts",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_relay(config: Settings = Depends(get_settings)) -> OutboundRelay:
    """Relay built from injected settings; tests override this dependency."""
    return OutboundRelay.from_settings(config)


def cors_json(content: dict) -> JSONResponse:
    return JSONResponse(content=content, status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


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
async def health_ready(response: Response, config: Settings = Depends(get_settings)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. TELEGRAM_BOT_TOKEN is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not config.TELEGRAM_BOT_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TELEGRAM_BOT_TOKEN not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Outbound Relay Route
# =============================================================================

@app.options("/send-telegram-message")
async def send_message_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@app.post("/send-telegram-message", response_model=SendMessageResponse)
async def send_telegram_message(
    request: Request,
    relay: OutboundRelay = Depends(get_relay),
) -> JSONResponse:
    """
    Send a message to a Telegram chat through the Bot API.

    Always answers 200 so browser callers can read the structured error:
    - success: true with message_id
    - success: false with error (configuration, validation, rejection,
      or delivery failure after retries)
    """
    raw_body = await request.body()

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid JSON: {e}")
        record_relay_send("validation_error")
        log_request_data(request, result="validation_error", error="Invalid JSON body")
        return cors_json(SendMessageResponse(success=False, error="Invalid JSON body").model_dump(exclude_none=True))

    # A JSON array or scalar carries no fields; the relay reports what is missing
    body = SendMessageRequest.model_validate(payload if isinstance(payload, dict) else {})

    result = await relay.send(body.chat_id, body.message)

    log_request_data(
        request,
        chat_id=body.chat_id,
        result="sent" if result.success else "failed",
        error=result.error,
    )

    response = SendMessageResponse(success=result.success, message_id=result.message_id, error=result.error)
    return cors_json(response.model_dump(exclude_none=True))


# =============================================================================
# Webhook Route
# =============================================================================

@app.options("/telegram-webhook")
async def webhook_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@app.post("/telegram-webhook", response_model=WebhookAckResponse)
async def telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    relay: OutboundRelay = Depends(get_relay),
    config: Settings = Depends(get_settings),
) -> JSONResponse:
    """
    Receive Telegram updates.

    - Upserts the sender's identity record
    - Confirms shared phone numbers and removes the reply keyboard
    - Answers /start with the chat ID and a share-contact button

    Always returns 200 with ok=true; internal failures only appear in
    the optional error field so Telegram never redelivers.
    """
    if not config.TELEGRAM_BOT_TOKEN:
        logger.error("Missing environment variables: TELEGRAM_BOT_TOKEN")
        record_webhook_outcome("config_error")
        log_request_data(request, result="config_error", error="Missing environment variables")
        return cors_json(WebhookAckResponse(error="Missing environment variables").model_dump(exclude_none=True))

    raw_body = await request.body()

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("invalid_payload")
        log_request_data(request, result="invalid_payload", error="Invalid JSON body")
        return cors_json(WebhookAckResponse(error="Invalid JSON body").model_dump(exclude_none=True))

    handler = WebhookHandler(db=db, relay=relay, logger=logging.getLogger("app.webhook"))

    try:
        ack = await handler.handle(payload)
    except Exception as e:
        # Telegram must still see ok=true
        logger.exception(f"Error in telegram webhook: {e}")
        record_webhook_outcome("internal_error")
        log_request_data(request, result="internal_error", error=str(e))
        return cors_json(WebhookAckResponse(error=str(e) or "Unknown error").model_dump(exclude_none=True))

    log_request_data(request, chat_id=ack.chat_id, result=ack.result, error=ack.error)

    return cors_json(WebhookAckResponse(ok=True, error=ack.error).model_dump(exclude_none=True))


# =============================================================================
# Identity Routes
# =============================================================================

def to_user_response(record) -> TelegramUserResponse:
    return TelegramUserResponse(
        chat_id=record.chat_id,
        username=record.username,
        first_name=record.first_name,
        last_name=record.last_name,
        phone_number=record.phone_number,
        state=state_of(IdentityProfile.from_record(record)).value,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@app.get("/telegram-users", response_model=TelegramUsersListResponse)
async def list_telegram_users(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of records to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of records to skip")] = 0,
    q: Annotated[str | None, Query(description="Search in username, first and last name (case-insensitive)")] = None,
    phone: Annotated[str | None, Query(description="Filter by phone number (exact match)")] = None,
    verified: Annotated[bool | None, Query(description="Only records with (true) or without (false) a phone")] = None,
    db: Session = Depends(get_db)
) -> TelegramUsersListResponse:
    """
    List Telegram identity records for the contacts UI.

    Ordering:
        - Most recently updated first, then chat_id ASC
    """
    logger.info(f"GET /telegram-users: limit={limit}, offset={offset}, q={q}, phone={phone}, verified={verified}")

    records, total = list_identities(
        db=db,
        limit=limit,
        offset=offset,
        q=q,
        phone_number=phone,
        verified=verified,
    )

    return TelegramUsersListResponse(
        data=[to_user_response(record) for record in records],
        total=total,
        limit=limit,
        offset=offset
    )


@app.get(
    "/telegram-users/{chat_id}",
    response_model=TelegramUserResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown chat_id"}},
)
async def get_telegram_user(chat_id: str, db: Session = Depends(get_db)) -> TelegramUserResponse:
    record = get_identity(db, chat_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="telegram user not found")
    return to_user_response(record)


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(db: Session = Depends(get_db)) -> StatsResponse:
    """
    Identity store analytics.

    Response:
        - total_users: Total identity records
        - phone_verified: Records with a shared phone number
        - identified_only: Records without a phone number
        - last_seen_at: Latest update timestamp (null if empty)
    """
    stats = get_identity_stats(db)
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
