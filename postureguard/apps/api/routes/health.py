from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from postureguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureguard.apps.api.response import SuccessEnvelope, success_response
from postureguard.core.config import get_settings
from postureguard.services.compliance.queue import get_queue_depth

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    evaluation_mode: str
    # None when the queue backend is unreachable.
    queue_depth: int | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    settings = get_settings()
    depth = await get_queue_depth()
    payload = HealthResponse(
        status="ok" if depth is not None else "degraded",
        evaluation_mode=settings.evaluation_execution_mode,
        queue_depth=depth,
    )
    return success_response(request=request, data=payload)
