from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from certintake.apps.api.response import SuccessEnvelope, envelope


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; no dependency checks so orchestrators never restart on a DB blip.
    return envelope(request=request, data=HealthResponse(status="ok").model_dump())
