# app/core/webhook_signature.py
"""Webhook authenticity checks: timestamped HMAC-SHA256, replay window, shared secrets."""
from __future__ import annotations

import hashlib
import hmac
import logging
import math
import time
from typing import Callable, Optional

from fastapi import HTTPException, Request

from app.core.config import settings
from app.core.errors import SignatureInvalid

logger = logging.getLogger(__name__)


def _ghl_message(timestamp: str, body: bytes) -> bytes:
    return timestamp.encode("utf-8") + b"." + body


def _zoom_message(timestamp: str, body: bytes) -> bytes:
    return b"v0:" + timestamp.encode("utf-8") + b":" + body


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _parse_timestamp(timestamp: str) -> Optional[float]:
    try:
        value = float(timestamp.strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    # Some senders use epoch milliseconds
    if value > 10_000_000_000:
        value = value / 1000
    return value


def check_replay_window(timestamp: str, *, now: Optional[float] = None, window_seconds: Optional[int] = None) -> None:
    ts = _parse_timestamp(timestamp)
    if ts is None:
        raise SignatureInvalid("Invalid webhook timestamp")
    window = settings.WEBHOOK_REPLAY_WINDOW_SECONDS if window_seconds is None else window_seconds
    current = time.time() if now is None else now
    if abs(current - ts) > window:
        raise SignatureInvalid("Webhook timestamp outside the replay window")


def verify_timestamped_signature(
    *,
    secret: str,
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    build_message: Callable[[str, bytes], bytes],
    prefix: str = "",
    now: Optional[float] = None,
    window_seconds: Optional[int] = None,
) -> bool:
    """
    Verify HMAC-SHA256(secret, message(timestamp, body)) in constant time.

    Returns False (and logs a warning) when no secret is configured, so legacy
    senders keep working. Raises SignatureInvalid on any failure otherwise.
    """
    if not secret:
        logger.warning("Webhook secret not configured; skipping signature verification")
        return False

    if not signature or not timestamp:
        raise SignatureInvalid("Missing webhook signature or timestamp")

    check_replay_window(timestamp, now=now, window_seconds=window_seconds)

    expected = prefix + compute_signature(secret, build_message(timestamp, body))
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    if not hmac.compare_digest(expected, provided):
        raise SignatureInvalid("Invalid webhook signature")
    return True


def verify_ghl_signature(body: bytes, signature: Optional[str], timestamp: Optional[str], *, secret: Optional[str] = None, now: Optional[float] = None) -> bool:
    return verify_timestamped_signature(
        secret=settings.GHL_WEBHOOK_SECRET if secret is None else secret,
        signature=signature,
        timestamp=timestamp,
        body=body,
        build_message=_ghl_message,
        now=now,
    )


def verify_zoom_signature(body: bytes, signature: Optional[str], timestamp: Optional[str], *, secret: Optional[str] = None, now: Optional[float] = None) -> bool:
    return verify_timestamped_signature(
        secret=settings.ZOOM_WEBHOOK_SECRET if secret is None else secret,
        signature=signature,
        timestamp=timestamp,
        body=body,
        build_message=_zoom_message,
        prefix="v0=",
        now=now,
    )


def zoom_url_validation_token(plain_token: str, *, secret: Optional[str] = None) -> str:
    key = settings.ZOOM_WEBHOOK_SECRET if secret is None else secret
    return hmac.new(key.encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_shared_secret(provided: Optional[str], *candidates: Optional[str]) -> bool:
    """Constant-time match of a provided secret against any configured candidate."""
    if not provided:
        return False
    matched = False
    for candidate in candidates:
        if candidate and hmac.compare_digest(candidate.encode("utf-8"), provided.encode("utf-8")):
            matched = True
    return matched


def verify_payment_secret(provided: Optional[str], *, secret: Optional[str] = None) -> bool:
    configured = settings.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not configured:
        logger.warning("PAYMENT_WEBHOOK_SECRET not configured; accepting unsigned payment webhook")
        return False
    if not verify_shared_secret(provided, configured):
        raise SignatureInvalid("Invalid webhook secret")
    return True


async def read_body_safe(request: Request) -> bytes:
    """Read the raw body, refusing anything over WEBHOOK_MAX_PAYLOAD_BYTES."""
    limit = settings.WEBHOOK_MAX_PAYLOAD_BYTES
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > limit:
                raise HTTPException(413, "Payload too large")
        except ValueError:
            pass

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > limit:
            raise HTTPException(413, "Payload too large")
        chunks.append(chunk)
    return b"".join(chunks)
