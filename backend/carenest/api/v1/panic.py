"""
FastAPI route: panic button.

    POST /api/v1/panic   — raise a PANIC alert for the caller

The alert is stored and (by default) the guardian and trusted contacts
are texted before the response is sent. A 429 carries ``Retry-After``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from backend.carenest.api.dependencies import get_caller_id
from backend.carenest.api.schemas import AlertResponse, PanicRequest
from backend.carenest.container import ServiceContainer, get_container

router = APIRouter(prefix="/api/v1/panic", tags=["panic"])


@router.post(
    "",
    response_model=AlertResponse,
    status_code=201,
    summary="Trigger a panic alert",
)
def trigger_panic(
    body: PanicRequest,
    background_tasks: BackgroundTasks,
    caller_id: Optional[str] = Depends(get_caller_id),
    container: ServiceContainer = Depends(get_container),
):
    alert = container.panic.trigger(
        caller_id, body.latitude, body.longitude, message=body.message,
    )
    background_tasks.add_task(container.pump)
    return AlertResponse(**alert.to_dict())
