"""AES-256-GCM encryption for tax-authority certificate bundles.

The certificate, its private key and the certificate password are
serialized together as one JSON document and encrypted once.  The 256-bit
key is derived from the configured master secret with PBKDF2-HMAC-SHA256
and a fixed application salt, so the same secret always yields the same key
and stored bundles stay readable across restarts.
"""

from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ledger_engine.errors import DecryptionError, InvalidInput

_KEY_SALT = b"creditdesk-credential-vault-v1"
_KEY_ITERATIONS = 100_000
_IV_BYTES = 12  # 96-bit nonce
_TAG_BYTES = 16
_AAD = b"tax-automation"

BUNDLE_FIELDS = ("cert_data", "private_key", "cert_password")


@dataclass(frozen=True)
class EncryptedBundle:
    """Base64 ciphertext, nonce and GCM tag as stored on the credential row."""

    ciphertext: str
    iv: str
    tag: str


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class CredentialVault:
    """Encrypt and decrypt credential bundles under one master secret."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise InvalidInput("Credential encryption key is not configured")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KEY_SALT,
            iterations=_KEY_ITERATIONS,
        )
        self._aesgcm = AESGCM(kdf.derive(secret.encode()))

    def encrypt_bundle(self, bundle: dict[str, Any]) -> EncryptedBundle:
        """Encrypt *bundle* with a fresh random IV."""
        iv = os.urandom(_IV_BYTES)
        plaintext = json.dumps(bundle, separators=(",", ":"), sort_keys=True).encode()
        ct_with_tag = self._aesgcm.encrypt(iv, plaintext, _AAD)
        return EncryptedBundle(
            ciphertext=_b64(ct_with_tag[:-_TAG_BYTES]),
            iv=_b64(iv),
            tag=_b64(ct_with_tag[-_TAG_BYTES:]),
        )

    def decrypt_bundle(self, ciphertext: str, iv: str, tag: str) -> dict[str, Any]:
        """Decrypt a stored bundle.

        Raises
        ------
        DecryptionError
            The data is malformed, was tampered with, or was encrypted under
            a different key.
        """
        try:
            plaintext = self._aesgcm.decrypt(_unb64(iv), _unb64(ciphertext) + _unb64(tag), _AAD)
            bundle = json.loads(plaintext)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError("Stored credential could not be decrypted") from exc
        if not isinstance(bundle, dict):
            raise DecryptionError("Stored credential has an unexpected format")
        return bundle
