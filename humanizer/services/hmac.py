"""HMAC utilities for verifying identity-provider webhook signatures.

The identity provider signs webhooks the Svix way: HMAC-SHA256 over
``"{id}.{timestamp}.{body}"`` keyed with the base64 part of a ``whsec_``
secret, sent base64-encoded as one or more ``v1,<sig>`` entries.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        secret = secret[len("whsec_"):]
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode()


def sign_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Return the ``v1,<base64>`` signature for a webhook payload."""
    signed = f"{msg_id}.{timestamp}.".encode() + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_webhook(
    secret: str,
    msg_id: str,
    timestamp: str,
    signature_header: str,
    body: bytes,
    *,
    tolerance_s: int = 300,
    now: float | None = None,
) -> bool:
    """Return ``True`` if any signature in the header matches the body."""
    if not (msg_id and timestamp and signature_header):
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_s:
        return False

    expected = sign_payload(secret, msg_id, timestamp, body)
    for candidate in signature_header.split():
        if hmac.compare_digest(expected, candidate):
            return True
    return False


__all__ = ["sign_payload", "verify_webhook"]
