from __future__ import annotations

import base64
import logging
import os
import secrets

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from keyring.errors import KeyringError

from mcp_env_manager.config import ENCRYPTION_KEY_ENV_VAR, KEYRING_KEY_NAME, SERVICE_NAME

logger = logging.getLogger(__name__)

SEALED_PREFIX = "enc:v1:"
_HKDF_INFO = b"mcp-env-manager/profile-values/v1"


class VaultError(RuntimeError):
    pass


class MissingKey(VaultError):
    pass


class DecryptFailure(VaultError):
    pass


def generate_encryption_key() -> str:
    return secrets.token_hex(32)


def is_sealed(value: str) -> bool:
    return value.startswith(SEALED_PREFIX)


def read_keyring_key(service: str = SERVICE_NAME) -> str | None:
    try:
        return keyring.get_password(service, KEYRING_KEY_NAME) or None
    except KeyringError as exc:
        logger.debug("Keyring unavailable: %s", exc)
        return None


def store_keyring_key(key: str, service: str = SERVICE_NAME) -> None:
    try:
        keyring.set_password(service, KEYRING_KEY_NAME, key)
    except KeyringError as exc:
        raise VaultError(str(exc)) from exc


def resolve_key_material(
    env_var: str = ENCRYPTION_KEY_ENV_VAR,
    service: str | None = SERVICE_NAME,
) -> str | None:
    """Key material from the environment, then the OS keyring (if a service is given)."""
    material = os.environ.get(env_var)
    if material:
        return material
    if service is None:
        return None
    return read_keyring_key(service)


class Vault:
    """Authenticated symmetric encryption for sensitive profile values.

    The Fernet key is derived with HKDF-SHA256 from key material that is looked
    up on first use and never written anywhere by this class.
    """

    def __init__(
        self,
        key_material: str | None = None,
        env_var: str = ENCRYPTION_KEY_ENV_VAR,
        keyring_service: str | None = SERVICE_NAME,
    ) -> None:
        self._key_material = key_material
        self._env_var = env_var
        self._keyring_service = keyring_service
        self._fernet: Fernet | None = None

    @property
    def has_key(self) -> bool:
        return self._material() is not None

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        return self._cipher().encrypt(plaintext)

    def decrypt_bytes(self, token: bytes) -> bytes:
        try:
            return self._cipher().decrypt(token)
        except InvalidToken as exc:
            raise DecryptFailure("Ciphertext is corrupt, tampered, or was sealed with another key") from exc

    def encrypt(self, plaintext: str) -> str:
        token = self.encrypt_bytes(plaintext.encode("utf-8"))
        return SEALED_PREFIX + token.decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not is_sealed(ciphertext):
            raise DecryptFailure("Value is not a sealed ciphertext")
        token = ciphertext[len(SEALED_PREFIX):].encode("ascii", errors="replace")
        try:
            return self.decrypt_bytes(token).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptFailure("Decrypted value is not valid UTF-8") from exc

    def _material(self) -> str | None:
        if self._key_material:
            return self._key_material
        return resolve_key_material(self._env_var, self._keyring_service)

    def _cipher(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet

        material = self._material()
        if not material:
            raise MissingKey(
                f"No encryption key: set {self._env_var} or run 'mcp-env init-key'"
            )
        derived = HKDF(algorithm=SHA256(), length=32, salt=None, info=_HKDF_INFO).derive(
            material.encode("utf-8")
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(derived))
        return self._fernet
