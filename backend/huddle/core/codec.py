"""AES-128-GCM codec for stored message text.

Blob layout, base64 encoded: nonce (12 bytes) || ciphertext || GCM tag (16 bytes).
The tag makes any tampering fail decryption instead of yielding garbage.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import get_settings

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 16


class CodecConfigError(RuntimeError):
    """Message key is missing or malformed."""


class MessageIntegrityError(Exception):
    """Stored payload failed authentication or is not a valid blob."""


def _key() -> bytes:
    b64 = get_settings().MESSAGE_KEY_BASE64
    if not b64:
        raise CodecConfigError("MESSAGE_KEY_BASE64 is not set")
    try:
        key = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CodecConfigError("MESSAGE_KEY_BASE64 is not valid base64") from e
    if len(key) != KEY_SIZE:
        raise CodecConfigError("AES-128 key must be 16 bytes")
    return key


def encrypt(plaintext: str) -> str:
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(blob: str) -> str:
    key = _key()
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MessageIntegrityError("Payload is not valid base64") from e
    if len(raw) < NONCE_SIZE + TAG_SIZE:
        raise MessageIntegrityError("Payload too short")
    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        data = AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise MessageIntegrityError("Payload failed authentication") from e
    return data.decode("utf-8")
