"""
Incoming Webhook Endpoint

Hands the raw body and headers to IngestionService untouched; signatures
are computed over the exact bytes received.
"""
import math

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.logging import get_correlation_id, get_logger
from webhook_hub.db.database import get_db
from webhook_hub.domain.services.ingestion_service import (
    IngestionService,
    IngestResult,
    IngestStatus,
    RejectReason,
)
from webhook_hub.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()

REJECTION_STATUS_CODES = {
    RejectReason.UNKNOWN_PROVIDER: 404,
    RejectReason.PROVIDER_INACTIVE: 403,
    RejectReason.INVALID_TOKEN: 401,
    RejectReason.RATE_LIMITED: 429,
    RejectReason.PAYLOAD_TOO_LARGE: 413,
    RejectReason.INVALID_SIGNATURE: 401,
    RejectReason.INVALID_JSON: 400,
    RejectReason.MISSING_EVENT_ID: 400,
    RejectReason.INVALID_EVENT_ID: 400,
    RejectReason.INVALID_EVENT_TYPE: 400,
    RejectReason.TIMESTAMP_OUT_OF_WINDOW: 400,
}


def _to_response(result: IngestResult) -> JSONResponse:
    headers = {"X-Correlation-ID": get_correlation_id()}

    if result.status == IngestStatus.REJECTED:
        content = {"status": result.status.value, "reason": result.reason.value}
        if result.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(result.retry_after)))
        return JSONResponse(
            status_code=REJECTION_STATUS_CODES.get(result.reason, 400),
            content=content,
            headers=headers,
        )

    content = {
        "status": result.status.value,
        "event_id": result.event_id,
        "dedup_state": result.dedup_state.value if result.dedup_state else None,
    }
    status_code = 201 if result.status == IngestStatus.ACCEPTED else 200
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@router.post(
    "/{provider}/{token}",
    summary="Receive Webhook",
    description="Receive a webhook from a configured provider.",
    responses={
        201: {"description": "Event accepted"},
        200: {"description": "Duplicate of an already accepted event"},
        401: {"description": "Invalid token or signature"},
        404: {"description": "Unknown provider"},
        429: {"description": "Rate limit exceeded"},
    },
    tags=["Webhooks"],
)
async def receive_webhook(
    provider: str,
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    body = await request.body()
    result = await IngestionService(db, runtime).ingest(
        provider=provider,
        token=token,
        raw_body=body,
        headers=request.headers,
        request_id=getattr(request.state, "correlation_id", None),
    )
    return _to_response(result)
