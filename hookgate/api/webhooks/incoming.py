"""
Inbound webhook endpoint - POST /hooks/{provider}/{token}

Provider, token, rate limit and declared size are checked before the body is
read; the body is then read up to one byte past the provider's limit.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from hookgate.core.logging import get_logger
from hookgate.domain.entities import ProviderConfig
from hookgate.domain.services.intake_service import IntakeService
from hookgate.api.dependencies import get_intake_service

logger = get_logger(__name__)

router = APIRouter()


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None or not raw.strip().isdigit():
        return None
    return int(raw)


async def _read_body(request: Request, provider: ProviderConfig) -> bytes:
    if not provider.payload_size_limit_enabled:
        return await request.body()

    cap = provider.max_payload_size_bytes + 1
    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        chunks.append(chunk)
        size += len(chunk)
        if size >= cap:
            # מספיק כדי שה-intake יזהה חריגה; לא קוראים את השאר
            break
    return b"".join(chunks)[:cap]


@router.post(
    "/hooks/{provider}/{token}",
    status_code=201,
    summary="Receive a webhook",
    responses={
        200: {"description": "Duplicate of an event already received"},
        201: {"description": "Event received"},
        400: {"description": "Invalid JSON or timestamp outside tolerance"},
        401: {"description": "Invalid token or signature"},
        403: {"description": "Provider inactive"},
        404: {"description": "Unknown provider"},
        413: {"description": "Payload too large"},
        429: {"description": "Rate limit exceeded"},
    },
    tags=["Webhooks"],
)
async def receive_webhook(
    provider: str,
    token: str,
    request: Request,
    intake: IntakeService = Depends(get_intake_service),
) -> JSONResponse:
    config = await intake.admit(provider, token, _declared_length(request))
    raw_payload = await _read_body(request, config)
    result = await intake.ingest(config, raw_payload, dict(request.headers))
    return JSONResponse(
        status_code=result.http_status,
        content={"id": result.event_id, "status": result.status},
    )
