"""Tests for template encryption and fingerprinting."""

import numpy as np
import pytest
from cryptography.fernet import Fernet
from django.test import override_settings

from recognition.errors import DecryptionError, EncryptionError
from recognition.vault import TemplateVault


def test_round_trip_preserves_every_value():
    vault = TemplateVault(key=Fernet.generate_key())
    vector = np.random.default_rng(42).normal(size=128)

    token = vault.encrypt_template(vector)

    np.testing.assert_array_equal(vault.decrypt_template(token), vector)
    assert vector.astype("<f8").tobytes() not in token


def test_each_encryption_uses_a_fresh_iv():
    vault = TemplateVault(key=Fernet.generate_key())
    assert vault.encrypt_template([0.1, 0.2]) != vault.encrypt_template([0.1, 0.2])


def test_tampered_token_is_rejected():
    vault = TemplateVault(key=Fernet.generate_key())
    token = bytearray(vault.encrypt_template([0.1, 0.2, 0.3]))
    token[-5] ^= 0x01

    with pytest.raises(DecryptionError):
        vault.decrypt_template(bytes(token))


def test_token_from_another_key_is_rejected():
    token = TemplateVault(key=Fernet.generate_key()).encrypt_template([1.0, 2.0])

    with pytest.raises(DecryptionError):
        TemplateVault(key=Fernet.generate_key()).decrypt_template(token)


def test_non_bytes_token_is_rejected():
    with pytest.raises(DecryptionError):
        TemplateVault(key=Fernet.generate_key()).decrypt_template("not-bytes")


@override_settings(FACE_DATA_ENCRYPTION_KEY=None)
def test_missing_key_raises_encryption_error():
    with pytest.raises(EncryptionError):
        TemplateVault().encrypt_template([1.0])


def test_invalid_key_raises_encryption_error():
    with pytest.raises(EncryptionError):
        TemplateVault(key="not-a-fernet-key").encrypt_template([1.0])


@pytest.mark.parametrize("vector", [[], [1.0, float("inf")]])
def test_unstorable_vectors_are_rejected(vector):
    with pytest.raises(ValueError):
        TemplateVault(key=Fernet.generate_key()).encrypt_template(vector)


def test_fingerprint_is_deterministic_and_key_independent():
    vector = [0.25, -0.5, 0.75]
    assert TemplateVault.fingerprint(vector) == TemplateVault.fingerprint(np.array(vector))
    assert len(TemplateVault.fingerprint(vector)) == 64
    assert TemplateVault.fingerprint(vector) != TemplateVault.fingerprint([0.25, -0.5, 0.7])


def test_reencrypt_moves_token_to_target_key():
    source = TemplateVault(key=Fernet.generate_key())
    target = TemplateVault(key=Fernet.generate_key(), key_reference="next")
    token = source.encrypt_template([0.5, 0.5])

    rotated = source.reencrypt(token, target)

    np.testing.assert_array_equal(target.decrypt_template(rotated), [0.5, 0.5])
    with pytest.raises(DecryptionError):
        source.decrypt_template(rotated)


@override_settings(FACE_DATA_KEY_REFERENCE="2024-q1")
def test_key_reference_defaults_from_settings():
    assert TemplateVault(key=Fernet.generate_key()).key_reference == "2024-q1"


def test_repr_hides_key_material():
    key = Fernet.generate_key()
    vault = TemplateVault(key=key, key_reference="rotation-2024")
    vault.encrypt_template([0.1, 0.2])

    text = repr(vault)

    assert key.decode() not in text
    assert "Fernet" not in text
    assert "rotation-2024" in text
