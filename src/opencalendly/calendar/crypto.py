"""At-rest encryption for calendar OAuth tokens.

Tokens are sealed with AES-256-GCM. The key is the SHA-256 digest of the
configured encryption secret, and the sealed form is four dot-separated
segments::

    v1.<iv>.<tag>.<ciphertext>

with each binary segment encoded as unpadded base64url. Plaintext tokens are
never persisted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

FORMAT_VERSION = "v1"
IV_BYTES = 12
TAG_BYTES = 16
MIN_SECRET_LENGTH = 16


class DecryptionError(ValueError):
    """Raised when a sealed token cannot be opened.

    Covers a format-version mismatch, missing or malformed segments and an
    authentication-tag failure (tampered ciphertext or the wrong secret).
    """


class InvalidEncryptionSecretError(ValueError):
    """Raised when the configured encryption secret is too weak to derive a key."""


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def derive_key(secret: str) -> bytes:
    if not isinstance(secret, str) or len(secret.strip()) < MIN_SECRET_LENGTH:
        raise InvalidEncryptionSecretError(
            f"Encryption secret must be at least {MIN_SECRET_LENGTH} characters."
        )
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_secret(plaintext: str, secret: str) -> str:
    """Seal *plaintext* under *secret*; every call uses a fresh random IV."""
    key = derive_key(secret)
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return ".".join(
        [FORMAT_VERSION, _b64url_encode(iv), _b64url_encode(tag), _b64url_encode(ciphertext)]
    )


def decrypt_secret(ciphertext: str, secret: str) -> str:
    """Open a value produced by :func:`encrypt_secret`.

    Raises:
        DecryptionError: the value is malformed, tampered with, or sealed
            under a different secret.
    """
    parts = ciphertext.split(".") if isinstance(ciphertext, str) else []
    if len(parts) != 4 or parts[0] != FORMAT_VERSION or not all(parts[1:]):
        raise DecryptionError("Encrypted secret format is invalid.")

    try:
        key = derive_key(secret)
    except InvalidEncryptionSecretError as exc:
        raise DecryptionError(str(exc)) from exc

    try:
        iv = _b64url_decode(parts[1])
        tag = _b64url_decode(parts[2])
        encrypted = _b64url_decode(parts[3])
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Encrypted secret segments are not valid base64url.") from exc

    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionError("Encrypted secret format is invalid.")

    try:
        plaintext = AESGCM(key).decrypt(iv, encrypted + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Encrypted secret failed authentication.") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted secret is not valid UTF-8.") from exc
