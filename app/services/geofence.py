from __future__ import annotations

import enum
from dataclasses import dataclass
from math import atan2, cos, radians, sin, sqrt

from app.models import Site

EARTH_RADIUS_M = 6371000.0


class GeofenceDecision(str, enum.Enum):
    ACCEPT = "ACCEPT"
    ESCALATE = "ESCALATE"


@dataclass(frozen=True, slots=True)
class GeofenceResult:
    is_inside: bool
    distance_m: float | None
    decision: GeofenceDecision
    validated: bool
    allowed_radius_m: float | None = None


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = radians(lat2 - lat1)
    delta_lon = radians(lon2 - lon1)

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    # Float rounding can push `a` slightly above 1 near antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


def site_has_geofence(site: Site | None) -> bool:
    if site is None:
        return False
    return (
        site.latitude is not None
        and site.longitude is not None
        and site.allowed_radius_m is not None
    )


def evaluate_geofence(site: Site | None, lat: float, lon: float) -> GeofenceResult:
    """Admission decision for an observed coordinate against a site.

    Geofencing is opt-in per site: a missing site, coordinate or radius disables
    validation and the check-in is accepted as is. The boundary is inclusive.
    """
    if not site_has_geofence(site):
        return GeofenceResult(
            is_inside=True,
            distance_m=None,
            decision=GeofenceDecision.ACCEPT,
            validated=False,
        )

    distance_value = distance_m(site.latitude, site.longitude, lat, lon)  # type: ignore[union-attr,arg-type]
    radius = float(site.allowed_radius_m)  # type: ignore[union-attr,arg-type]
    inside = distance_value <= radius
    return GeofenceResult(
        is_inside=inside,
        distance_m=distance_value,
        decision=GeofenceDecision.ACCEPT if inside else GeofenceDecision.ESCALATE,
        validated=True,
        allowed_radius_m=radius,
    )
