"""Great-circle geofence validation against a user's effective work site."""

from __future__ import annotations

import datetime
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

from users.models import WorkSchedule

from .errors import InputError
from .timeouts import retry_read

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class GeofenceResult:
    distance_meters: float
    within_radius: bool
    radius_meters: float


@dataclass(frozen=True)
class LocationCheck:
    """Outcome of validating a submission against the effective work site.

    ``checked`` is ``False`` when no site is configured, in which case the
    location is treated as valid.
    """

    checked: bool
    within_radius: bool = True
    distance_meters: Optional[float] = None
    radius_meters: Optional[float] = None
    site_name: str = ""
    schedule_id: Optional[int] = None

    @property
    def reason(self) -> Optional[str]:
        if not self.checked or self.within_radius:
            return None
        return (
            f"Location is {round(self.distance_meters)}m away from {self.site_name}. "
            f"Allowed radius: {round(self.radius_meters)}m"
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "within_radius": self.within_radius,
            "distance_meters": (
                round(self.distance_meters, 2) if self.distance_meters is not None else None
            ),
            "radius_meters": self.radius_meters,
            "site_name": self.site_name,
            "schedule_id": self.schedule_id,
        }


def validate_coordinates(latitude: Any, longitude: Any) -> tuple[float, float]:
    """Return ``(latitude, longitude)`` as floats or raise :class:`InputError`."""

    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError) as exc:
        raise InputError("Latitude and longitude are required.") from exc
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InputError("Coordinates must be finite numbers.")
    if not -90.0 <= lat <= 90.0:
        raise InputError("Latitude must be between -90 and 90.", details={"field": "latitude"})
    if not -180.0 <= lon <= 180.0:
        raise InputError(
            "Longitude must be between -180 and 180.", details={"field": "longitude"}
        )
    return lat, lon


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters using the mean Earth radius."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))
    return EARTH_RADIUS_METERS * c


def is_within_radius(
    latitude: float,
    longitude: float,
    site_latitude: float,
    site_longitude: float,
    radius_meters: float,
) -> GeofenceResult:
    """The boundary is inclusive: a distance equal to the radius is within it."""

    distance = haversine_distance(
        float(latitude), float(longitude), float(site_latitude), float(site_longitude)
    )
    return GeofenceResult(
        distance_meters=distance,
        within_radius=distance <= float(radius_meters),
        radius_meters=float(radius_meters),
    )


def effective_schedule(user, at: datetime.datetime) -> Optional[WorkSchedule]:
    """Most recently created schedule in force for ``user`` at ``at`` (highest id on ties)."""

    return retry_read(
        lambda: WorkSchedule.objects.filter(user=user).effective_at(at).first(),
        label="store.schedule",
    )


def validate_location(
    user, latitude: float, longitude: float, at: datetime.datetime
) -> LocationCheck:
    schedule = effective_schedule(user, at)
    if schedule is None or not schedule.has_site:
        return LocationCheck(checked=False)

    result = is_within_radius(
        latitude,
        longitude,
        float(schedule.latitude),
        float(schedule.longitude),
        schedule.location_radius,
    )
    check = LocationCheck(
        checked=True,
        within_radius=result.within_radius,
        distance_meters=result.distance_meters,
        radius_meters=result.radius_meters,
        site_name=schedule.location_name or schedule.schedule_name,
        schedule_id=schedule.pk,
    )
    if not result.within_radius:
        logger.info(
            "Submission for user %s is %.1fm from site (radius %.1fm)",
            user.pk,
            result.distance_meters,
            result.radius_meters,
        )
    return check


__all__ = [
    "EARTH_RADIUS_METERS",
    "GeofenceResult",
    "LocationCheck",
    "effective_schedule",
    "haversine_distance",
    "is_within_radius",
    "validate_coordinates",
    "validate_location",
]
