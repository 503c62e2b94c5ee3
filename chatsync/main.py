import logging
from contextlib import asynccontextmanager
from typing import Annotated, Generator, NoReturn, Optional

import httpx
from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from sqlalchemy.orm import Session

from chatsync.auth import Forbidden, Unauthorized, authorize_subject
from chatsync.budget import BudgetGuard
from chatsync.config import settings
from chatsync.credentials import NoCredentials
from chatsync.logging_utils import setup_logging, RequestLoggingMiddleware, log_sync_data
from chatsync.metrics import record_sync_outcome, get_metrics, get_metrics_content_type
from chatsync.provider import ProviderError
from chatsync.schemas import (
    HealthResponse,
    SyncRequest,
    SyncResponse,
    SkippedItemResponse,
    ErrorResponse,
    MessageResponse,
    MessagesListResponse,
)
from chatsync.storage import init_db, check_db_health, get_db, get_messages
from chatsync.sync import run_sync


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
    title="Conversation Sync API",
    description="Pulls a connected messaging account's chats and messages into local storage",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_http_client() -> Generator[httpx.Client, None, None]:
    """
    Dependency providing the outbound HTTP client for provider calls.
    One client per request, closed afterwards.
    """
    with httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
        yield client


def _reject(request: Request, subject_id: str, outcome: str, status_code: int, detail: str) -> NoReturn:
    record_sync_outcome(outcome)
    log_sync_data(request=request, subject_id=subject_id, result=outcome)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    raise HTTPException(status_code=status_code, detail=detail, headers=headers)


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
    Readiness probe - returns 200 only if:
    1. AUTH_JWT_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.AUTH_JWT_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="AUTH_JWT_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Sync Route
# =============================================================================

@app.post(
    "/sync",
    response_model=SyncResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Account not connected"},
        401: {"model": ErrorResponse, "description": "Missing or invalid identity"},
        403: {"model": ErrorResponse, "description": "Subject not owned by caller"},
        500: {"model": ErrorResponse, "description": "Chat listing failed or unexpected error"},
    }
)
def sync(
    request: Request,
    body: SyncRequest,
    authorization: Annotated[Optional[str], Header()] = None,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
) -> SyncResponse:
    """
    Pull recent chats and messages for a subject from the messaging provider.

    - Requires Authorization: Bearer <identity token> for the subject's owner
    - Bounded by SYNC_BUDGET_SECONDS; a run cut short returns 200 with
      budget_exhausted=true and the counts imported so far
    - Idempotent: re-running imports only messages not yet stored

    Runs in the threadpool: provider calls and backoff sleeps block.
    """
    budget = BudgetGuard(settings.SYNC_BUDGET_SECONDS)
    subject_id = body.subject_id
    logger.info(f"Sync requested for subject {subject_id}")

    try:
        authorize_subject(
            db,
            authorization,
            subject_id,
            secret=settings.AUTH_JWT_SECRET,
            audience=settings.AUTH_JWT_AUDIENCE,
        )
    except Unauthorized as e:
        _reject(request, subject_id, "unauthorized", status.HTTP_401_UNAUTHORIZED, str(e))
    except Forbidden as e:
        _reject(request, subject_id, "forbidden", status.HTTP_403_FORBIDDEN, str(e))

    try:
        summary = run_sync(
            db,
            http,
            subject_id,
            settings,
            budget,
            max_conversations=body.max_conversations,
        )
    except NoCredentials as e:
        _reject(request, subject_id, "no_credentials", status.HTTP_400_BAD_REQUEST, str(e))
    except ProviderError as e:
        logger.error(f"Provider error listing chats for subject {subject_id}: {e}")
        _reject(
            request,
            subject_id,
            "provider_error",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            f"Provider error: {e.status_code}",
        )
    except httpx.TransportError as e:
        logger.error(f"Provider unreachable for subject {subject_id}: {e!r}")
        _reject(request, subject_id, "provider_error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Provider unreachable")
    except Exception:
        logger.exception(f"Unexpected error syncing subject {subject_id}")
        _reject(request, subject_id, "error", status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    outcome = "partial" if summary.budget_exhausted or summary.skipped else "completed"
    record_sync_outcome(outcome, summary.messages_imported)
    log_sync_data(request=request, subject_id=subject_id, result=outcome, summary=summary)

    return SyncResponse(
        conversations_processed=summary.conversations_processed,
        messages_imported=summary.messages_imported,
        total_conversations_available=summary.total_conversations_available,
        budget_exhausted=summary.budget_exhausted,
        elapsed_ms=summary.elapsed_ms,
        skipped=[
            SkippedItemResponse(kind=item.kind, ref=item.ref, reason=item.reason)
            for item in summary.skipped
        ],
    )


# =============================================================================
# Messages Route
# =============================================================================

@app.get(
    "/subjects/{subject_id}/messages",
    response_model=MessagesListResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid identity"},
        403: {"model": ErrorResponse, "description": "Subject not owned by caller"},
    }
)
def list_messages(
    subject_id: str,
    authorization: Annotated[Optional[str], Header()] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    conversation_id: Annotated[Optional[str], Query(description="Restrict to one conversation")] = None,
    q: Annotated[Optional[str], Query(description="Free-text search in message text (case-insensitive)")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """
    List a subject's stored messages, newest first.

    Response:
        - data: messages matching filters
        - total: count matching filters (ignoring limit/offset)
        - limit, offset: the paging values used
    """
    try:
        authorize_subject(
            db,
            authorization,
            subject_id,
            secret=settings.AUTH_JWT_SECRET,
            audience=settings.AUTH_JWT_AUDIENCE,
        )
    except Unauthorized as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    except Forbidden as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    rows, total = get_messages(
        db=db,
        subject_id=subject_id,
        limit=limit,
        offset=offset,
        conversation_id=conversation_id,
        q=q,
    )

    data = [
        MessageResponse(
            id=msg.id,
            conversation_id=msg.conversation_id,
            conversation_name=conversation.external_name,
            sender_label=msg.sender_label,
            is_subject_sender=msg.is_subject_sender,
            msg_type=msg.msg_type,
            message_timestamp=msg.message_timestamp,
            text_content=msg.text_content,
            text_excerpt=msg.text_excerpt,
            media_url=msg.media_url,
        )
        for msg, conversation in rows
    ]

    return MessagesListResponse(data=data, total=total, limit=limit, offset=offset)


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
