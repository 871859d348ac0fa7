"""
Utility functions for the ingestion service.
"""

import hmac
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Fixed-width format so that string order matches chronological order
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header,
            optionally prefixed with "sha256="
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    logger.debug(f"Body length: {len(body)} bytes, signature: {provided[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, provided)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def new_id() -> str:
    return str(uuid.uuid4())


def format_ts(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now_iso(offset_seconds: float = 0) -> str:
    """Server time as an ISO-8601 UTC string, optionally shifted."""
    return format_ts(datetime.now(timezone.utc) + timedelta(seconds=offset_seconds))


def epoch_to_iso(value) -> Optional[str]:
    """
    Convert a provider timestamp (epoch seconds or milliseconds) to ISO-8601.

    Returns None when the value is missing, not numeric or out of range.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # Anything past year 2286 in seconds is really milliseconds
    if number > 10_000_000_000:
        number = number / 1000
    try:
        return format_ts(datetime.fromtimestamp(number, tz=timezone.utc))
    except (ValueError, OverflowError, OSError):
        # nan, inf or outside the platform's datetime range
        return None


def digits_only(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())
