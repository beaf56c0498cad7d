"""Reversible, tamper-evident tokens that bind provider purchases to subscribers."""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Optional, Union

from .models import SubscriberRef

logger = logging.getLogger(__name__)

_TAG_BYTES = 12
DEFAULT_MAX_LENGTH = 64


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class ObfuscatedIdentityCodec:
    """Encode subscriber references into opaque tokens safe to hand to a provider.

    Tokens carry a truncated HMAC tag followed by the reference masked with a
    keystream derived from that tag. Encoding is deterministic, so the same
    subscriber always maps to the same token, and any edit to the token fails
    the tag check on decode.
    """

    def __init__(self, salt: Union[str, bytes], *, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        if not salt:
            raise ValueError("An obfuscation salt is required")
        self._salt = salt.encode("utf-8") if isinstance(salt, str) else salt
        self._max_length = max_length

    def _tag(self, plaintext: bytes) -> bytes:
        return hmac.new(self._salt, plaintext, hashlib.sha256).digest()[:_TAG_BYTES]

    def _keystream(self, tag: bytes, length: int) -> bytes:
        blocks = []
        counter = 0
        while sum(len(block) for block in blocks) < length:
            blocks.append(hmac.new(self._salt, tag + counter.to_bytes(4, "big"), hashlib.sha256).digest())
            counter += 1
        return b"".join(blocks)[:length]

    def encode(self, subscriber: SubscriberRef) -> str:
        plaintext = subscriber.key().encode("utf-8")
        tag = self._tag(plaintext)
        masked = bytes(a ^ b for a, b in zip(plaintext, self._keystream(tag, len(plaintext))))
        token = _b64encode(tag + masked)
        if len(token) > self._max_length:
            raise ValueError(
                f"Subscriber reference too long to obfuscate within {self._max_length} characters"
            )
        return token

    def decode(self, token: Optional[str]) -> Optional[SubscriberRef]:
        """Recover the subscriber for ``token`` or ``None`` if it was tampered with."""

        if not token or len(token) > self._max_length:
            return None
        try:
            raw = _b64decode(token)
        except (binascii.Error, ValueError):
            logger.warning("Rejected malformed obfuscated identity token")
            return None
        if len(raw) <= _TAG_BYTES:
            return None

        tag, masked = raw[:_TAG_BYTES], raw[_TAG_BYTES:]
        plaintext = bytes(a ^ b for a, b in zip(masked, self._keystream(tag, len(masked))))
        if not hmac.compare_digest(tag, self._tag(plaintext)):
            logger.warning("Rejected obfuscated identity token with invalid tag")
            return None

        try:
            return SubscriberRef.parse(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Obfuscated identity token decoded to an invalid subscriber reference")
            return None
