"""HMAC signing of webhook bodies."""

from __future__ import annotations

import hashlib
import hmac
import secrets


def generate_secret() -> str:
    """Return a new subscription secret: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def sign_payload(body: str | bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: str | bytes, secret: str, signature: str) -> bool:
    """Constant-time check of an ``X-Webhook-Signature`` value, for receivers."""
    return hmac.compare_digest(sign_payload(body, secret), signature.strip().lower())
