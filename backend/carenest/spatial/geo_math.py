"""
geo_math.py — Great-circle distance and circular geofence membership.

All distances are in **meters**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = 6,371,000 m (mean Earth radius used by the mobile clients too,
         so server and client agree on fence edges)

A point is inside a circular geofence when d(point, centre) ≤ radius.
The boundary itself counts as inside.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from backend.carenest.core.errors import ValidationError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_M: float = 6_371_000.0

MIN_LATITUDE, MAX_LATITUDE = -90.0, 90.0
MIN_LONGITUDE, MAX_LONGITUDE = -180.0, 180.0


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)


def validate_coordinates(latitude: float, longitude: float) -> Coordinate:
    """
    Check coordinate ranges and return the validated Coordinate.

    Raises
    ------
    ValidationError
        ``error_code="INVALID_COORDINATES"`` with the offending field.
    """
    if latitude is None or not (MIN_LATITUDE <= latitude <= MAX_LATITUDE):
        raise ValidationError(
            "Invalid latitude: must be between -90 and 90",
            field="latitude",
            error_code="INVALID_COORDINATES",
            value=latitude,
        )
    if longitude is None or not (MIN_LONGITUDE <= longitude <= MAX_LONGITUDE):
        raise ValidationError(
            "Invalid longitude: must be between -180 and 180",
            field="longitude",
            error_code="INVALID_COORDINATES",
            value=longitude,
        )
    return Coordinate(float(latitude), float(longitude))


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def distance_meters(a: Coordinate, b: Coordinate) -> float:
    """
    Great-circle distance between two points in meters.

    Examples
    --------
    >>> distance_meters(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    >>> round(distance_meters(Coordinate(0, 0), Coordinate(0, 1)))
    111195
    """
    d_lat = b.lat_rad - a.lat_rad
    d_lon = b.lon_rad - a.lon_rad

    h = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(a.lat_rad)
        * math.cos(b.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Floating error can push h a hair above 1 for antipodal points
    h = min(1.0, h)

    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return EARTH_RADIUS_M * c


def is_inside(point: Coordinate, center: Coordinate, radius_m: float) -> bool:
    """True if ``point`` lies within ``radius_m`` of ``center`` (edge inclusive)."""
    return distance_meters(point, center) <= radius_m
