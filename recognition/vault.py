"""Fernet-backed storage helpers for enrolled face templates.

Feature vectors are serialised as little-endian float64 bytes and sealed with
Fernet (AES-128-CBC with a random IV per token, authenticated with
HMAC-SHA256). Tokens and raw vectors must never be logged or returned by the
API; only the SHA-256 fingerprint and quality score are externally visible.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Sequence, Union

import numpy as np
from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

from .errors import DecryptionError, EncryptionError

BytesLike = Union[bytes, bytearray, memoryview]

_TEMPLATE_DTYPE = np.dtype("<f8")


def _coerce_key_bytes(key: BytesLike | str) -> bytes:
    """Normalise the configured Fernet key to ``bytes``."""

    if isinstance(key, str):
        return key.encode()
    return bytes(key)


def _canonical_bytes(vector: Sequence[float] | np.ndarray) -> bytes:
    array = np.asarray(vector, dtype=_TEMPLATE_DTYPE).reshape(-1)
    if array.size == 0:
        raise ValueError("Cannot store an empty feature vector.")
    if not np.all(np.isfinite(array)):
        raise ValueError("Feature vectors must contain only finite values.")
    return array.tobytes()


@dataclass(slots=True)
class TemplateVault:
    """Encrypt, decrypt and fingerprint feature vectors with a process-wide key.

    The key is resolved from ``FACE_DATA_ENCRYPTION_KEY`` the first time it is
    needed (or taken from ``key``) and is treated as immutable afterwards.
    """

    key: BytesLike | str | None = field(default=None, repr=False)
    key_reference: str | None = None
    setting_name: str = "FACE_DATA_ENCRYPTION_KEY"
    _cipher: Fernet | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.key_reference is None:
            self.key_reference = getattr(settings, "FACE_DATA_KEY_REFERENCE", "primary")

    def _resolve_key(self) -> bytes:
        key = self.key
        if key is None:
            key = getattr(settings, self.setting_name, None)
        if not key:
            raise EncryptionError(f"{self.setting_name} is not configured.")

        key_bytes = _coerce_key_bytes(key)
        try:
            Fernet(key_bytes)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"{self.setting_name} is invalid.") from exc
        return key_bytes

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._resolve_key())
        return self._cipher

    def encrypt_template(self, vector: Sequence[float] | np.ndarray) -> bytes:
        """Return a Fernet token sealing ``vector``.

        Raises:
            EncryptionError: when the key is missing or invalid.
            ValueError: when ``vector`` is empty or not finite.
        """

        payload = _canonical_bytes(vector)
        return self._get_cipher().encrypt(payload)

    def decrypt_template(self, token: BytesLike) -> np.ndarray:
        """Recover the vector sealed in ``token``.

        Raises:
            DecryptionError: when the token was tampered with, sealed under a
                different key, or does not hold a float64 vector.
        """

        if not isinstance(token, (bytes, bytearray, memoryview)):
            raise DecryptionError("Template token must be bytes.")
        cipher = self._get_cipher()
        try:
            payload = cipher.decrypt(bytes(token))
        except InvalidToken as exc:
            raise DecryptionError() from exc

        if not payload or len(payload) % _TEMPLATE_DTYPE.itemsize:
            raise DecryptionError("Decrypted template has an unexpected length.")
        vector = np.frombuffer(payload, dtype=_TEMPLATE_DTYPE).astype(np.float64)
        if not np.all(np.isfinite(vector)):
            raise DecryptionError("Decrypted template contains non-finite values.")
        return vector

    def reencrypt(self, token: BytesLike, target: "TemplateVault") -> bytes:
        """Decrypt ``token`` with this vault and seal it again under ``target``'s key."""

        return target.encrypt_template(self.decrypt_template(token))

    @staticmethod
    def fingerprint(vector: Sequence[float] | np.ndarray) -> str:
        """Deterministic SHA-256 hex digest used only for duplicate pre-screening."""

        return hashlib.sha256(_canonical_bytes(vector)).hexdigest()


__all__ = ["TemplateVault"]
