from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from orgguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from orgguard.apps.api.response import SuccessEnvelope

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


# The request middleware wraps the body in the success envelope.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")
