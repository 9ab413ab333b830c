"""
FastAPI route: location updates and location reads.

Provides endpoints to:
    POST /api/v1/locations                          — record a sample
    GET  /api/v1/locations/latest?subject_id=…      — most recent sample of each
                                                      of the caller's subjects
    GET  /api/v1/locations/{subject_id}/latest      — most recent sample
    GET  /api/v1/locations/{subject_id}/history     — samples in a time range

Handlers are plain ``def``: the store and gateway are blocking, so
FastAPI runs them in its threadpool. After a write the change stream is
pumped as a background task, which runs the geofence evaluator and
then the alert dispatcher.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from backend.carenest.api.dependencies import authorize_subject_read, get_caller_id
from backend.carenest.api.schemas import (
    LatestLocationsResponse,
    LocationHistoryResponse,
    LocationResponse,
    LocationUpdateRequest,
)
from backend.carenest.container import ServiceContainer, get_container
from backend.carenest.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1/locations", tags=["locations"])


@router.post(
    "",
    response_model=LocationResponse,
    status_code=201,
    summary="Record a location sample for the caller",
)
def update_location(
    body: LocationUpdateRequest,
    background_tasks: BackgroundTasks,
    caller_id: Optional[str] = Depends(get_caller_id),
    container: ServiceContainer = Depends(get_container),
):
    point = container.ingest.record(
        caller_id,
        body.latitude,
        body.longitude,
        accuracy=body.accuracy,
        timestamp=body.timestamp,
    )
    background_tasks.add_task(container.pump)
    return LocationResponse(**point.to_dict())


@router.get(
    "/latest",
    response_model=LatestLocationsResponse,
    summary="Most recent location of each of the caller's subjects",
)
def latest_locations(
    subject_id: List[str] = Query(..., description="Subject ids; repeat the parameter for each"),
    caller_id: Optional[str] = Depends(get_caller_id),
    container: ServiceContainer = Depends(get_container),
):
    points = container.ingest.latest_for_guardian(caller_id, subject_id)
    return LatestLocationsResponse(
        count=len(points),
        locations=[LocationResponse(**p.to_dict()) for p in points],
    )


@router.get(
    "/{subject_id}/latest",
    response_model=LocationResponse,
    summary="Most recent location of a subject",
)
def latest_location(
    subject_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    container: ServiceContainer = Depends(get_container),
):
    authorize_subject_read(container, caller_id, subject_id)
    point = container.ingest.latest(subject_id)
    if point is None:
        raise NotFoundError("Location", subject_id=subject_id)
    return LocationResponse(**point.to_dict())


@router.get(
    "/{subject_id}/history",
    response_model=LocationHistoryResponse,
    summary="Location history of a subject, newest first",
)
def location_history(
    subject_id: str,
    start: Optional[datetime] = Query(None, description="Inclusive lower bound (ISO-8601)"),
    end: Optional[datetime] = Query(None, description="Inclusive upper bound (ISO-8601)"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    caller_id: Optional[str] = Depends(get_caller_id),
    container: ServiceContainer = Depends(get_container),
):
    authorize_subject_read(container, caller_id, subject_id)
    points = container.ingest.history(subject_id, start, end, limit=limit)
    return LocationHistoryResponse(
        subject_id=subject_id,
        count=len(points),
        locations=[LocationResponse(**p.to_dict()) for p in points],
    )
