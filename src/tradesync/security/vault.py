"""Credential vault for exchange API secrets at rest.

AES-256-GCM via ``cryptography``.  The key is the SHA-256 digest of the
secret in ``TRADESYNC_SECRET`` (configurable), or of a machine-specific
seed when that variable is unset.  Ciphertext is stored as
``iv:tag:data`` in lowercase hex.

Values that are not in that three-part format are treated as legacy
plaintext and returned unchanged by :meth:`CredentialVault.decrypt`.
"""

from __future__ import annotations

import getpass
import hashlib
import logging
import os
import socket

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tradesync.core.errors import CredentialError

logger = logging.getLogger(__name__)

_IV_BYTES = 16
_TAG_BYTES = 16


def machine_seed() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"tradesync-{socket.gethostname()}-{user}-v1"


def derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


class CredentialVault:
    """Encrypts and decrypts short secrets.

    Parameters
    ----------
    secret:
        Key material.  When omitted it is read from *secret_env*, falling
        back to :func:`machine_seed` with a warning.
    secret_env:
        Environment variable holding the key material.
    """

    def __init__(
        self,
        secret: str | None = None,
        *,
        secret_env: str = "TRADESYNC_SECRET",
    ) -> None:
        if secret is None:
            secret = os.environ.get(secret_env, "")
        if not secret:
            logger.warning(
                "%s not set, using a machine-specific key; set it for stronger protection",
                secret_env,
            )
            secret = machine_seed()
        self._aead = AESGCM(derive_key(secret))

    @staticmethod
    def is_encrypted(value: str) -> bool:
        parts = value.split(":") if value else []
        return (
            len(parts) == 3
            and len(parts[0]) == _IV_BYTES * 2
            and len(parts[1]) == _TAG_BYTES * 2
        )

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        data, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{data.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext of *ciphertext*.

        Raises:
            CredentialError: the value looks like vault output but is
                malformed, was encrypted under another key, or was altered.
        """
        if not ciphertext:
            return ""
        parts = ciphertext.split(":")
        if len(parts) != 3:
            return ciphertext  # Legacy plaintext

        iv_hex, tag_hex, data_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            data = bytes.fromhex(data_hex)
        except ValueError as exc:
            raise CredentialError(f"Malformed encrypted credential: {exc}") from exc
        if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
            raise CredentialError("Malformed encrypted credential: bad iv or tag length")

        try:
            plain = self._aead.decrypt(iv, data + tag, None)
        except InvalidTag as exc:
            raise CredentialError(
                "Credential could not be decrypted (wrong key or tampered value)"
            ) from exc
        return plain.decode("utf-8")
