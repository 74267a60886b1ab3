"""Work schedule creation and user status changes."""

import datetime
from decimal import Decimal

import pytest

from fakes import NOW
from recognition.errors import InputError, NotPermitted, UserNotActive, UserNotFound
from users.models import AuditLogEntry, User, WorkSchedule

pytestmark = pytest.mark.django_db

NINE = datetime.time(9, 0)
FIVE = datetime.time(17, 0)


@pytest.fixture
def enrolled_employee(employee, enroll_vector):
    enroll_vector(employee, [1.0, 0.0])
    return employee


def _schedule(service, admin, user, **overrides):
    fields = {
        "schedule_name": "Head office",
        "start_time": NINE,
        "end_time": FIVE,
        "working_days": [5, 1, 2, 3, 4, 1],
        "latitude": Decimal("40.71280000"),
        "longitude": Decimal("-74.00600000"),
        "location_name": "HQ",
    }
    fields.update(overrides)
    return service.create_work_schedule(admin.pk, user.pk, **fields)


def test_admin_creates_schedule_and_it_is_audited(service, admin_user, employee):
    schedule = _schedule(service, admin_user, employee, location_radius=250)

    stored = WorkSchedule.objects.get(pk=schedule.pk)
    assert stored.user == employee
    assert stored.working_days == [1, 2, 3, 4, 5]
    assert stored.location_radius == 250
    assert stored.is_active

    entry = AuditLogEntry.objects.get(action="work_schedule_created")
    assert entry.actor == admin_user
    assert entry.resource_type == "work_schedule"
    assert entry.resource_id == str(schedule.pk)
    assert entry.severity == "low"
    assert entry.new_values == {
        "user_id": employee.pk,
        "schedule_name": "Head office",
        "start_time": "09:00:00",
        "end_time": "17:00:00",
    }


def test_schedule_radius_defaults_to_site_setting(service, admin_user, employee, settings):
    settings.RECOGNITION_DEFAULT_SITE_RADIUS_METERS = 350

    schedule = _schedule(service, admin_user, employee)

    assert schedule.location_radius == 350


def test_model_default_radius_follows_setting(employee, settings):
    settings.RECOGNITION_DEFAULT_SITE_RADIUS_METERS = 75

    schedule = WorkSchedule.objects.create(
        user=employee, schedule_name="Remote", start_time=NINE, end_time=FIVE, working_days=[1]
    )

    assert schedule.location_radius == 75


def test_created_schedule_drives_the_geofence(service, admin_user, enrolled_employee):
    _schedule(
        service,
        admin_user,
        enrolled_employee,
        latitude=Decimal("51.50000000"),
        longitude=Decimal("-0.12000000"),
        location_radius=100,
    )

    record = service.submit_attendance(
        enrolled_employee.pk, b"jpeg", {"latitude": 40.7128, "longitude": -74.006}, NOW
    )

    assert record.status == "flagged"
    assert "HQ" in record.rejection_reason


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"working_days": [0, 8]}, "working_days"),
        ({"working_days": []}, "working_days"),
        ({"longitude": None}, "longitude"),
        ({"latitude": Decimal("91")}, "latitude"),
        ({"location_radius": 0}, "location_radius"),
        ({"schedule_name": "  "}, "schedule_name"),
        (
            {
                "effective_from": datetime.date(2024, 3, 10),
                "effective_to": datetime.date(2024, 3, 1),
            },
            "effective_to",
        ),
    ],
)
def test_invalid_schedules_are_rejected(service, admin_user, employee, overrides, field):
    with pytest.raises(InputError) as excinfo:
        _schedule(service, admin_user, employee, **overrides)

    assert excinfo.value.details["field"] == field
    assert not WorkSchedule.objects.exists()
    assert not AuditLogEntry.objects.filter(action="work_schedule_created").exists()


def test_schedule_for_unknown_user_is_not_found(service, admin_user):
    with pytest.raises(UserNotFound):
        service.create_work_schedule(
            admin_user.pk,
            999999,
            schedule_name="Nowhere",
            start_time=NINE,
            end_time=FIVE,
            working_days=[1],
        )


def test_employees_cannot_create_schedules(service, employee, make_user):
    other = make_user()

    with pytest.raises(NotPermitted):
        _schedule(service, employee, other)

    assert not WorkSchedule.objects.exists()


def test_status_change_records_old_and_new_status(service, admin_user, employee):
    user = service.change_user_status(
        employee.pk, admin_user.pk, User.Status.SUSPENDED, "  Badge misuse "
    )

    employee.refresh_from_db()
    assert user.status == employee.status == User.Status.SUSPENDED
    assert employee.is_active is False

    entry = AuditLogEntry.objects.get(action="user_status_changed")
    assert entry.actor == admin_user
    assert entry.resource_type == "user"
    assert entry.resource_id == str(employee.pk)
    assert entry.severity == "medium"
    assert entry.old_values == {"status": "active"}
    assert entry.new_values == {"status": "suspended", "reason": "Badge misuse"}


def test_suspended_user_cannot_check_in(service, admin_user, enrolled_employee):
    service.change_user_status(enrolled_employee.pk, admin_user.pk, User.Status.SUSPENDED)

    with pytest.raises(UserNotActive):
        service.submit_attendance(
            enrolled_employee.pk, b"jpeg", {"latitude": 40.7128, "longitude": -74.006}, NOW
        )

    service.change_user_status(enrolled_employee.pk, admin_user.pk, User.Status.ACTIVE)
    record = service.submit_attendance(
        enrolled_employee.pk, b"jpeg", {"latitude": 40.7128, "longitude": -74.006}, NOW
    )
    assert record.status == "approved"


def test_unknown_status_is_rejected(service, admin_user, employee):
    with pytest.raises(InputError):
        service.change_user_status(employee.pk, admin_user.pk, "retired")


def test_admin_cannot_change_own_status(service, admin_user):
    with pytest.raises(InputError):
        service.change_user_status(admin_user.pk, admin_user.pk, User.Status.INACTIVE)

    admin_user.refresh_from_db()
    assert admin_user.status == User.Status.ACTIVE


def test_only_super_admins_change_super_admins(service, admin_user, super_admin):
    with pytest.raises(NotPermitted):
        service.change_user_status(super_admin.pk, admin_user.pk, User.Status.SUSPENDED)

    service.change_user_status(admin_user.pk, super_admin.pk, User.Status.SUSPENDED)
    admin_user.refresh_from_db()
    assert admin_user.status == User.Status.SUSPENDED


def test_status_change_for_unknown_user_is_not_found(service, admin_user):
    with pytest.raises(UserNotFound):
        service.change_user_status(999999, admin_user.pk, User.Status.INACTIVE)
