import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from shardtalk.config import get_settings
from shardtalk.errors import ConflictError, ServiceUnavailableError, ShardTalkError, ValidationError
from shardtalk.logging_utils import setup_logging, RequestLoggingMiddleware, log_ingest_data
from shardtalk.messages import count_messages, list_messages, save_message
from shardtalk.metrics import record_message_write, get_metrics, get_metrics_content_type
from shardtalk.schemas import (
    ErrorResponse,
    HealthResponse,
    MessageCountResponse,
    MessagesResponse,
    SaveMessageRequest,
    SaveMessageResponse,
    TotalMessagesResponse,
)
from shardtalk.storage import init_db, close_db, check_db_health, get_db


# Setup structured JSON logging
setup_logging(get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables and indexes
    - Shutdown: dispose the database engine
    """
    init_db()
    yield
    close_db()


app = FastAPI(
    title="ShardTalk API",
    description="Queryable mirror of on-chain ShardTalk chat messages",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def _json(model: BaseModel, status_code: int = status.HTTP_200_OK, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        content=model.model_dump(mode="json", by_alias=True, exclude_none=True),
        status_code=status_code,
        headers=headers,
    )


def _format_errors(errors) -> str:
    """Flatten pydantic error dicts into one message, e.g. 'query.limit: ...'."""
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in errors
    )


# =============================================================================
# Error Handlers
# =============================================================================

@app.exception_handler(ShardTalkError)
async def shardtalk_error_handler(request: Request, exc: ShardTalkError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        content = {"error": exc.message}
    else:
        content = {"success": False, "error": exc.message}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": _format_errors(exc.errors())},
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
def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the database is reachable and
    the messages table exists, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Messages Routes
# =============================================================================

@app.get(
    "/messages",
    responses={
        200: {"model": MessagesResponse, "description": "Messages page, or MessageCountResponse when count=true"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
)
def get_messages(
    address: Annotated[str | None, Query(description="Sender address (case-insensitive)")] = None,
    count: Annotated[bool, Query(description="Return only the message count")] = False,
    page: Annotated[int, Query(ge=1, description="Page number, starting at 1")] = 1,
    limit: Annotated[int, Query(ge=1, le=100, description="Messages per page")] = 20,
    db: Session = Depends(get_db)
) -> JSONResponse:
    """
    Count or list messages sent by an address.

    Query Parameters:
        - address: sender address, 0x followed by 40 hex characters
        - count: when true, return {address, messageCount}
        - page: page number (default 1)
        - limit: messages per page (default 20, min 1, max 100)

    Messages are ordered by timestamp descending (most recent first).
    A database failure answers 200 with success=false and zero/empty data.
    """
    if not address:
        raise ValidationError("Address parameter is required")

    if count:
        result = count_messages(db, address)
        logger.info(f"GET /messages: count for {result.address} = {result.message_count}")
        return _json(result)

    result = list_messages(db, address, page=page, limit=limit)
    logger.info(
        f"GET /messages: returned {len(result.messages)} of {result.pagination.total} "
        f"messages for {result.address} (page={page}, limit={limit})"
    )
    return _json(result)


@app.post(
    "/messages",
    response_model=SaveMessageResponse,
    responses={
        409: {"description": "Conflicting concurrent write"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"description": "Database unavailable, retry later"},
    }
)
async def post_message(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    """
    Save a message after its ledger transaction is confirmed.

    Upserts by messageId: repeating the call with the same messageId never
    creates a duplicate and never fails, the later write wins.
    """
    raw_body = await request.body()
    body_dict = None

    try:
        body_dict = json.loads(raw_body)
        payload = SaveMessageRequest.model_validate(body_dict)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_message_write("validation_error")
        log_ingest_data(request=request, result="validation_error")
        raise ValidationError(f"Invalid JSON: {e}")
    except PydanticValidationError as e:
        logger.error(f"Validation error: {e}")
        record_message_write("validation_error")
        log_ingest_data(
            request=request,
            message_id=body_dict.get("messageId") if isinstance(body_dict, dict) else None,
            result="validation_error"
        )
        raise ValidationError(_format_errors(e.errors()))

    try:
        result = save_message(db, payload)
    except ServiceUnavailableError:
        log_ingest_data(request=request, message_id=payload.message_id, result="unavailable")
        raise
    except ConflictError:
        log_ingest_data(request=request, message_id=payload.message_id, result="conflict")
        raise

    outcome = "inserted" if result.inserted else "updated" if result.updated else "unchanged"
    log_ingest_data(request=request, message_id=payload.message_id, result=outcome)
    return _json(result)


@app.get(
    "/totalmsg/{address}",
    response_model=TotalMessagesResponse,
    responses={422: {"description": "Invalid address"}},
)
def total_messages(address: str, db: Session = Depends(get_db)) -> JSONResponse:
    """
    Total message count for an address.

    Example: /totalmsg/0x22D74ADFB45147d7588aFA3ba0eF1c363b7dFcFF
    Never cached. A database failure answers 200 with success=false and 0.
    """
    headers = {"Cache-Control": "no-cache, no-store, must-revalidate"}

    try:
        result: MessageCountResponse = count_messages(db, address)
    except ValidationError as e:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": e.message,
                "address": address,
                "totalMessages": 0,
            },
            headers=headers,
        )

    return _json(
        TotalMessagesResponse(
            success=result.success,
            address=result.address,
            total_messages=result.message_count,
            error=result.error,
        ),
        headers=headers,
    )


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
