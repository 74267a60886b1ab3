"""Regression coverage for development face template key handling."""

from __future__ import annotations

import importlib
import json
import sys

import pytest
from cryptography.fernet import Fernet


def _reload_base_settings():
    for module in [
        "biometric_attendance.settings.base",
        "biometric_attendance.settings",
    ]:
        sys.modules.pop(module, None)
    return importlib.import_module("biometric_attendance.settings.base")


@pytest.fixture(autouse=True)
def _reset_environment(monkeypatch):
    """Ensure encryption-specific environment variables do not leak between tests."""

    for env_var in ["FACE_DATA_ENCRYPTION_KEY", "FACE_DATA_KEY_REFERENCE", "DJANGO_DEBUG"]:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("DJANGO_DEBUG", "1")
    yield


def test_dev_key_is_persisted_and_reusable(tmp_path, monkeypatch):
    cache_path = tmp_path / "dev_keys.json"
    monkeypatch.setenv("DEV_ENCRYPTION_KEY_FILE", str(cache_path))
    monkeypatch.setenv("LOCAL_ENV_PATH", str(tmp_path / ".env"))

    settings_base = _reload_base_settings()

    first_key = settings_base.FACE_DATA_ENCRYPTION_KEY
    token = Fernet(first_key).encrypt(b"template-bytes")

    assert json.loads(cache_path.read_text())["FACE_DATA_ENCRYPTION_KEY"] == first_key.decode()

    settings_base = _reload_base_settings()

    assert settings_base.FACE_DATA_ENCRYPTION_KEY == first_key
    assert Fernet(settings_base.FACE_DATA_ENCRYPTION_KEY).decrypt(token) == b"template-bytes"
    assert settings_base.FACE_DATA_KEY_REFERENCE == "primary"


def test_dotenv_value_is_respected(tmp_path, monkeypatch):
    cache_path = tmp_path / "dev_keys.json"
    dotenv_path = tmp_path / ".env"
    face_key = Fernet.generate_key()
    dotenv_path.write_text(f"# local overrides\nFACE_DATA_ENCRYPTION_KEY='{face_key.decode()}'\n")

    monkeypatch.setenv("DEV_ENCRYPTION_KEY_FILE", str(cache_path))
    monkeypatch.setenv("LOCAL_ENV_PATH", str(dotenv_path))

    settings_base = _reload_base_settings()

    assert settings_base.FACE_DATA_ENCRYPTION_KEY == face_key
    assert not cache_path.exists()
