"""
Pydantic schemas for the location and panic API.

Coordinate ranges are deliberately not constrained here: the core
validates them and answers with its own INVALID_COORDINATES error, so
clients see the same error whether they go through HTTP or not.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationUpdateRequest(BaseModel):
    """One location sample from a device."""
    latitude: float = Field(..., description="Latitude in decimal degrees", examples=[12.9716])
    longitude: float = Field(..., description="Longitude in decimal degrees", examples=[77.5946])
    accuracy: Optional[float] = Field(
        None, description="Reported horizontal accuracy in meters", examples=[12.0],
    )
    timestamp: Optional[datetime] = Field(
        None, description="Sample time (ISO-8601); defaults to receipt time",
    )


class PanicRequest(BaseModel):
    latitude: float = Field(..., examples=[12.9716])
    longitude: float = Field(..., examples=[77.5946])
    message: Optional[str] = Field(
        None, max_length=500, examples=["I'm lost near the station"],
    )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class LocationResponse(BaseModel):
    id: str
    subject_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: str


class LocationHistoryResponse(BaseModel):
    subject_id: str
    count: int
    locations: List[LocationResponse]


class AlertLocation(BaseModel):
    latitude: float
    longitude: float


class AlertResponse(BaseModel):
    id: str
    subject_id: str
    guardian_id: str
    type: str
    location: AlertLocation
    geofence_id: Optional[str] = None
    geofence_name: Optional[str] = None
    message: str
    is_read: bool = False
    timestamp: str


class LatestLocationsResponse(BaseModel):
    """Latest sample per requested subject; subjects without one are omitted."""
    count: int
    locations: List[LocationResponse]
