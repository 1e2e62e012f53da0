from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from legalhub.services.telemetry import counters_snapshot, request_summary, vendor_success_rate


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/metrics")
async def metrics(window_s: int = 3600) -> dict:
    # In-process counters only; a restart resets them.
    return {
        "requests": request_summary(window_s),
        "vendor_success_rate": vendor_success_rate(window_s),
        "counters": counters_snapshot(),
    }
