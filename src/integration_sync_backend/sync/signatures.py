"""Webhook signature verification helpers."""

import hashlib
import hmac
import time
from typing import Mapping, Optional, Union

DEFAULT_TIMESTAMP_TOLERANCE_SECONDS = 300


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names so lookups match any casing."""
    return {k.lower(): v for k, v in headers.items()}


def compute_hmac_sha256(secret: str, payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_hmac_signature(
    secret: Optional[str],
    payload: Union[str, bytes, None],
    signature: Optional[str],
    prefix: str = "",
) -> bool:
    """
    Check ``signature`` against HMAC-SHA256(secret, payload).

    Args:
        secret: Shared signing secret
        payload: Exact bytes the provider signed
        signature: Value received in the signature header
        prefix: Scheme prefix the provider prepends (``sha256=``, ``v0=``)

    Returns:
        True only for a well-formed, matching signature
    """
    if not secret or payload is None or not signature:
        return False
    expected = prefix + compute_hmac_sha256(secret, payload)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def is_timestamp_fresh(
    timestamp: Optional[str],
    tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Reject missing, malformed or out-of-window request timestamps."""
    if not timestamp:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    return abs(current - ts) <= tolerance_seconds
