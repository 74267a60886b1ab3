"""Tests for distance calculation and effective work-site resolution."""

import datetime
import math
from decimal import Decimal

import pytest

from fakes import NOW
from recognition.errors import InputError
from recognition.geofence import (
    EARTH_RADIUS_METERS,
    effective_schedule,
    haversine_distance,
    is_within_radius,
    validate_coordinates,
    validate_location,
)
from users.models import WorkSchedule


def _schedule(user, **overrides):
    values = {
        "schedule_name": "Day shift",
        "start_time": datetime.time(9, 0),
        "end_time": datetime.time(17, 0),
        "working_days": [1, 2, 3, 4, 5],
        "latitude": Decimal("40.71280000"),
        "longitude": Decimal("-74.00600000"),
        "location_radius": 100,
        "location_name": "HQ",
    }
    values.update(overrides)
    return WorkSchedule.objects.create(user=user, **values)


def test_one_degree_of_longitude_on_the_equator():
    expected = EARTH_RADIUS_METERS * math.pi / 180
    assert haversine_distance(0.0, 0.0, 0.0, 1.0) == pytest.approx(expected, rel=1e-9)


def test_distance_to_self_is_zero():
    assert haversine_distance(40.7128, -74.006, 40.7128, -74.006) == 0.0


def test_radius_boundary_is_inclusive():
    distance = haversine_distance(0.0, 0.0, 0.0, 0.001)

    assert is_within_radius(0.0, 0.0, 0.0, 0.001, distance).within_radius is True
    assert is_within_radius(0.0, 0.0, 0.0, 0.001, distance - 0.01).within_radius is False


@pytest.mark.parametrize(
    "latitude, longitude",
    [(None, 10.0), (91.0, 0.0), (-90.5, 0.0), (0.0, 180.5), ("abc", 0.0), (float("nan"), 0.0)],
)
def test_invalid_coordinates_are_rejected(latitude, longitude):
    with pytest.raises(InputError):
        validate_coordinates(latitude, longitude)


def test_coordinate_extremes_are_accepted():
    assert validate_coordinates("-90", 180) == (-90.0, 180.0)


@pytest.mark.django_db
def test_no_schedule_means_location_is_not_checked(employee):
    check = validate_location(employee, 10.0, 10.0, NOW)
    assert check.checked is False
    assert check.reason is None


@pytest.mark.django_db
def test_schedule_without_site_is_not_checked(employee):
    _schedule(employee, latitude=None, longitude=None)
    assert validate_location(employee, 10.0, 10.0, NOW).checked is False


@pytest.mark.django_db
def test_outside_radius_produces_reason(employee):
    _schedule(employee)

    check = validate_location(employee, 40.7173, -74.0060, NOW)

    assert check.checked is True
    assert check.within_radius is False
    assert check.reason == "Location is 500m away from HQ. Allowed radius: 100m"


@pytest.mark.django_db
def test_site_name_falls_back_to_schedule_name(employee):
    _schedule(employee, location_name="")
    check = validate_location(employee, 40.7173, -74.0060, NOW)
    assert "away from Day shift." in check.reason


@pytest.mark.django_db
def test_most_recent_schedule_wins_and_expired_ones_are_ignored(employee):
    older = _schedule(employee, schedule_name="old", created_at=NOW - datetime.timedelta(days=30))
    _schedule(
        employee,
        schedule_name="expired",
        created_at=NOW,
        effective_to=NOW.date() - datetime.timedelta(days=1),
    )
    _schedule(employee, schedule_name="inactive", created_at=NOW, is_active=False)

    assert effective_schedule(employee, NOW) == older

    newer = _schedule(employee, schedule_name="new", created_at=NOW - datetime.timedelta(days=1))
    assert effective_schedule(employee, NOW) == newer


@pytest.mark.django_db
def test_schedule_tie_on_creation_time_prefers_highest_id(employee):
    first = _schedule(employee, schedule_name="first", created_at=NOW)
    second = _schedule(employee, schedule_name="second", created_at=NOW)

    assert second.pk > first.pk
    assert effective_schedule(employee, NOW) == second


@pytest.mark.django_db
def test_schedule_not_yet_effective_is_ignored(employee):
    _schedule(employee, effective_from=NOW.date() + datetime.timedelta(days=1))
    assert effective_schedule(employee, NOW) is None
