"""
Utility functions for the webhook API.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
SIGNATURE_PREFIX = "sha256="


def utc_now() -> str:
    """Current wall-clock time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def epoch_to_iso(value: Union[str, int, float]) -> str:
    """
    Convert an epoch-seconds value (as sent by the platform) to ISO-8601 UTC.

    Raises:
        ValueError: if the value is not a number of seconds
    """
    try:
        seconds = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"invalid epoch timestamp: {value!r}")
    try:
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError):
        raise ValueError(f"epoch timestamp out of range: {value!r}")
    return moment.strftime(TIMESTAMP_FORMAT)


def verify_hmac_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify an X-Hub-Signature-256 header.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex digest>"
        secret: APP_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        return False
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:15]}...")

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("utf-8"), signature.encode("utf-8"))
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def verify_api_key(provided: Optional[str], expected: str) -> bool:
    """Constant-time API key comparison."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
