from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


@dataclass(frozen=True)
class WebhookHandshakeResult:
    status_code: int
    challenge: str | None = None
    error: str | None = None


def _header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def compute_meta_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_meta_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    secret = settings.meta_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=True, reason="app_secret_not_configured")

    provided = _header_value(headers, SIGNATURE_HEADER)
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")
    if not provided.lower().startswith(SIGNATURE_PREFIX):
        return WebhookSignatureVerification(verified=False, reason="signature_invalid")

    expected = compute_meta_signature(secret, body)
    normalized = f"{SIGNATURE_PREFIX}{provided[len(SIGNATURE_PREFIX):].strip().lower()}"
    if not hmac.compare_digest(normalized, expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")
    return WebhookSignatureVerification(verified=True)


def verify_subscription_handshake(
    *,
    settings: Settings,
    mode: str | None,
    verify_token: str | None,
    challenge: str | None,
) -> WebhookHandshakeResult:
    expected = settings.meta_webhook_verify_token.strip()
    if not expected:
        return WebhookHandshakeResult(status_code=503, error="Webhook verify token não configurado.")
    if mode != "subscribe" or not verify_token or not hmac.compare_digest(verify_token, expected):
        return WebhookHandshakeResult(status_code=403, error="Forbidden")
    return WebhookHandshakeResult(status_code=200, challenge=challenge or "")
