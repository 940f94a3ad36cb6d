import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from chatroom.config import settings
from chatroom.errors import ChatError, InvalidInput, ServerError
from chatroom.logging_utils import setup_logging, RequestLoggingMiddleware, log_send_data
from chatroom.metrics import record_send_outcome, record_fetch_size, get_metrics, get_metrics_content_type
from chatroom.pipeline import submit
from chatroom.schemas import (
    ErrorResponse,
    FetchResponse,
    HealthResponse,
    InitResponse,
    MessageResponse,
    SendRequest,
    SendResponse,
)
from chatroom.sessions import SessionGuard, SessionRecord, SessionRegistry
from chatroom.storage import DEFAULT_FETCH_LIMIT, init_db, check_db_health, get_db, fetch_messages


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

SEND_PATH = "/api/send"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="Chatroom API",
    description="Multi-user chat with watermark-based incremental sync",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.session_registry = SessionRegistry(ttl_seconds=settings.SESSION_TTL_SECONDS)
app.state.session_guard = SessionGuard(min_interval=settings.RATE_LIMIT_SECONDS)

# The cookie carries only the session id; session state stays server side
app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET, same_site="lax")
app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def get_session_guard(request: Request) -> SessionGuard:
    return request.app.state.session_guard


def get_chat_session(
    request: Request,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionRecord:
    """Look up the caller's session record, issuing one on first contact."""
    record = registry.get_or_create(request.session.get("sid"))
    request.session["sid"] = record.session_id
    return record


FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def get_send_request(request: Request) -> SendRequest:
    """
    Parse a send body, either JSON or an HTML form post.

    Form values that are not plain strings (file uploads) fail the same
    string check as non-string JSON values.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        data = dict(form)
    else:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInput("body", "must be a JSON object or form data")
    try:
        return SendRequest.model_validate(data)
    except ValidationError as e:
        raise invalid_input_from_errors(e.errors())


# =============================================================================
# Error Handlers
# =============================================================================

def _error_response(request: Request, exc: ChatError) -> JSONResponse:
    if request.url.path == SEND_PATH:
        record_send_outcome(exc.result)
        log_send_data(request, result=exc.result)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def invalid_input_from_errors(errors) -> InvalidInput:
    """Name the first failing field of a pydantic error list."""
    error = errors[0] if errors else {}
    loc = [str(part) for part in error.get("loc", ())]
    # Request errors are prefixed with their source, e.g. ("body", "name")
    if len(loc) > 1 and loc[0] in ("body", "query"):
        loc = loc[1:]
    field = loc[0] if loc else "body"
    return InvalidInput(field, error.get("msg", "is invalid"))


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return _error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed or unknown request fields are invalid input, never coerced."""
    invalid = invalid_input_from_errors(exc.errors())
    logger.info(f"Request validation failed: {invalid.field}: {invalid.reason}")
    return _error_response(request, invalid)


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
    1. SESSION_SECRET is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.SESSION_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SESSION_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Chat Routes
# =============================================================================

@app.get(
    "/api/init",
    response_model=InitResponse,
    responses={500: {"model": ErrorResponse, "description": "Store unreachable"}},
)
def init(record: SessionRecord = Depends(get_chat_session)) -> InitResponse:
    """
    Open (or resume) a chat session.

    Confirms the store is usable and returns the session's anti-forgery
    token, which must accompany every post.
    """
    if not check_db_health():
        raise ServerError()
    return InitResponse(csrf=record.csrf_token)


@app.post(
    SEND_PATH,
    response_model=SendResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Invalid CSRF token"},
        422: {"model": ErrorResponse, "description": "Invalid input"},
        429: {"model": ErrorResponse, "description": "Posting too quickly"},
        500: {"model": ErrorResponse, "description": "Storage failure"},
    },
)
def send(
    request: Request,
    body: SendRequest = Depends(get_send_request),
    db: Session = Depends(get_db),
    record: SessionRecord = Depends(get_chat_session),
    guard: SessionGuard = Depends(get_session_guard),
) -> SendResponse:
    """
    Post a message.

    Body (JSON object or form fields):
        - csrf: token from /api/init
        - name: display name (max 50 chars)
        - email: address identifying the author (max 255 chars)
        - content: message text (max 1000 chars)
    """
    client_address = request.client.host if request.client else None

    message_id = submit(db, record, guard, body, client_address)

    record_send_outcome("created")
    log_send_data(request, result="created", message_id=message_id)
    return SendResponse(id=message_id)


@app.get(
    "/api/fetch",
    response_model=FetchResponse,
    responses={500: {"model": ErrorResponse, "description": "Storage failure"}},
)
def fetch(
    since_id: Annotated[int, Query(description="Highest message id already received")] = 0,
    limit: Annotated[int, Query(description="Maximum messages (1-200, otherwise 100)")] = DEFAULT_FETCH_LIMIT,
    db: Session = Depends(get_db),
) -> FetchResponse:
    """
    Incremental sync.

    With since_id > 0, returns messages with a greater id in ascending order.
    Without one, returns the most recent window, oldest first. An empty list
    means nothing is new.
    """
    try:
        messages = fetch_messages(db, since_id=since_id, limit=limit)
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch messages: {e}")
        raise ServerError() from e

    record_fetch_size(len(messages))

    return FetchResponse(
        messages=[MessageResponse(**msg._asdict()) for msg in messages]
    )


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
