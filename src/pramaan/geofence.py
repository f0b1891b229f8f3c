"""
Geofence evaluation for attendance challenges.

A geofence is a circle around the campus center, optionally tightened by a
polygon for irregular boundaries. A reported location is accepted when its
GPS accuracy is good enough and it lies inside every configured boundary.
"""

import hashlib
import json
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import structlog

from .constants import EARTH_RADIUS_M, GEOFENCE_TAG
from .data_models import Geofence, Location
from .exceptions import LocationRejectedError

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GeofenceCheck:
    """Outcome of evaluating one location against one geofence."""

    accepted: bool
    distance_m: float
    reason: Optional[str] = None


def haversine_distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_in_polygon(
    latitude: float, longitude: float, polygon: Sequence[Tuple[float, float]]
) -> bool:
    """
    Ray-casting containment test.

    Treats coordinates as planar, which is accurate enough at campus scale.
    """
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        lat_i, lon_i = polygon[i]
        lat_j, lon_j = polygon[j]
        if (lon_i > longitude) != (lon_j > longitude):
            crossing = (lat_j - lat_i) * (longitude - lon_i) / (lon_j - lon_i) + lat_i
            if latitude < crossing:
                inside = not inside
        j = i
    return inside


def geofence_token(geofence: Optional[Geofence]) -> bytes:
    """
    Digest binding a challenge to its geofence.

    Computed over canonical JSON so that client and server agree byte for
    byte; a challenge without a geofence hashes the literal ``none``.
    """
    if geofence is None:
        payload = b"none"
    else:
        payload = json.dumps(geofence.to_dict(), sort_keys=True, separators=(",", ":")).encode(
            "utf-8"
        )
    return hashlib.sha256(GEOFENCE_TAG + payload).digest()


def evaluate_location(geofence: Geofence, location: Location) -> GeofenceCheck:
    """
    Check a reported location against a geofence.

    Parameters
    ----------
    geofence : Geofence
        Permitted area attached to the challenge.
    location : Location
        Client-reported position.

    Returns
    -------
    GeofenceCheck
        Acceptance flag, distance from the center and rejection reason.
    """
    distance = haversine_distance_m(
        geofence.latitude, geofence.longitude, location.latitude, location.longitude
    )

    if location.accuracy_m > geofence.max_accuracy_m:
        return GeofenceCheck(False, distance, "gps_accuracy_too_low")

    if distance > geofence.radius_m:
        return GeofenceCheck(False, distance, "outside_radius")

    if geofence.polygon and not point_in_polygon(
        location.latitude, location.longitude, geofence.polygon
    ):
        return GeofenceCheck(False, distance, "outside_polygon")

    return GeofenceCheck(True, distance)


def require_inside(geofence: Geofence, location: Optional[Location]) -> GeofenceCheck:
    """
    Enforce a geofence.

    Raises
    ------
    LocationRejectedError
        If no location was reported or it falls outside the geofence.
    """
    if location is None:
        raise LocationRejectedError(
            "Location required for geofenced challenge", {"reason": "location_missing"}
        )

    check = evaluate_location(geofence, location)
    logger.info(
        "Location validated",
        distance_m=round(check.distance_m, 2),
        radius_m=geofence.radius_m,
        accuracy_m=location.accuracy_m,
        accepted=check.accepted,
    )

    if not check.accepted:
        raise LocationRejectedError(
            "Location outside permitted area",
            {"reason": check.reason, "distance_m": round(check.distance_m, 2)},
        )
    return check
