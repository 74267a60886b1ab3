from types import SimpleNamespace

from django.apps import apps
from django.core.cache import cache

import numpy as np
import pytest

from fakes import (
    FakeDecoder,
    FakeDetector,
    FakeExtractor,
    FakeSubModel,
    FixedClock,
    RecordingNotifier,
)
from recognition import monitoring
from recognition.models import FaceTemplate
from recognition.services import Capabilities, build_attendance_service
from recognition.vault import TemplateVault
from users.models import User


@pytest.fixture(autouse=True)
def reset_metrics_and_cache():
    """Metrics and the cache-backed admin feed must not leak between tests."""

    monitoring.reset_for_tests()
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(username=None, **extra):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        extra.setdefault("employee_id", f"EMP-{username}")
        return User.objects.create_user(username=username, password="pass1234", **extra)

    return _make_user


@pytest.fixture
def employee(make_user):
    return make_user("alice")


@pytest.fixture
def admin_user(make_user):
    return make_user("admin", role=User.Role.ADMIN)


@pytest.fixture
def super_admin(make_user):
    return make_user("root", role=User.Role.SUPER_ADMIN)


@pytest.fixture
def vault():
    return TemplateVault()


@pytest.fixture
def enroll_vector(vault):
    """Store a template directly, bypassing the enrollment checks."""

    def _enroll(user, vector, *, primary=True, quality=95):
        return FaceTemplate.objects.create(
            user=user,
            encrypted_encoding=vault.encrypt_template(vector),
            key_reference=vault.key_reference,
            template_hash=vault.fingerprint(vector),
            quality_score=quality,
            is_primary=primary,
        )

    return _enroll


@pytest.fixture
def fakes():
    return SimpleNamespace(
        decoder=FakeDecoder(),
        detector=FakeDetector(),
        extractor=FakeExtractor([0.92, float(np.sqrt(1 - 0.92**2))]),
        liveness_model=FakeSubModel(0.9),
        texture_analyzer=FakeSubModel(0.85),
        depth_analyzer=FakeSubModel(0.88),
        notifier=RecordingNotifier(),
        clock=FixedClock(),
    )


@pytest.fixture
def service(fakes, vault, monkeypatch):
    """Attendance service wired to the fakes and installed as the app-wide service."""

    capabilities = Capabilities(
        decoder=fakes.decoder,
        detector=fakes.detector,
        extractor=fakes.extractor,
        liveness_model=fakes.liveness_model,
        texture_analyzer=fakes.texture_analyzer,
        depth_analyzer=fakes.depth_analyzer,
        notifier=fakes.notifier,
    )
    built = build_attendance_service(capabilities, vault=vault, clock=fakes.clock)
    monkeypatch.setattr(apps.get_app_config("recognition"), "attendance_service", built)
    return built
