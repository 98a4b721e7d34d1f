"""Webhook and trigger authentication helpers."""
import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a provider webhook signature.

    When no secret is configured signatures are not checked and every body is
    accepted. With a secret, a missing or wrong signature fails.
    """
    if not secret:
        return True
    if not signature:
        logger.warning("Webhook received without signature header")
        return False

    expected = compute_signature(body, secret)
    # Some gateways prefix the algorithm, e.g. "sha256=<hex>"
    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    return hmac.compare_digest(expected, provided.strip().lower())


def verify_shared_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time shared-secret check; an unset expected secret allows all."""
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> Optional[str]:
    """Originating address: first X-Forwarded-For hop, X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer
