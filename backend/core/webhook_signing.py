"""HMAC signing for outbound webhook step payloads.

When a webhook step carries a secret, the HTTP client signs the exact
body bytes it sends so the receiver can verify authenticity.

Headers added:
  X-Workflow-Signature: sha256=<hex_digest>
  X-Workflow-Timestamp: <unix_timestamp>
  X-Workflow-Delivery: <unique_delivery_id>

The signature is HMAC-SHA256 over f"{timestamp}.{body}". Receivers check
the timestamp against a tolerance window and compare in constant time.
"""

import hashlib
import hmac
import secrets
import time
from typing import Optional
from uuid import uuid4

SIGNATURE_HEADER = "X-Workflow-Signature"
TIMESTAMP_HEADER = "X-Workflow-Timestamp"
DELIVERY_HEADER = "X-Workflow-Delivery"

DEFAULT_TOLERANCE_SECONDS = 300  # 5 minutes


def _digest(secret: str, timestamp: int, payload: bytes) -> str:
    return hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + payload,
        hashlib.sha256,
    ).hexdigest()


def sign_webhook_payload(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
    delivery_id: Optional[str] = None,
) -> dict[str, str]:
    """Sign a webhook body and return the headers to send with it.

    Args:
        payload: Exact request body bytes
        secret: Signing secret shared with the receiver
        timestamp: Unix timestamp (defaults to now)
        delivery_id: Unique delivery ID (defaults to a UUID)
    """
    ts = timestamp or int(time.time())
    return {
        SIGNATURE_HEADER: f"sha256={_digest(secret, ts, payload)}",
        TIMESTAMP_HEADER: str(ts),
        DELIVERY_HEADER: delivery_id or str(uuid4()),
    }


def verify_webhook_signature(
    payload: bytes,
    secret: str,
    signature_header: str,
    timestamp_header: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """Verify a signature produced by sign_webhook_payload.

    Returns True only if the timestamp is within tolerance and the
    signature matches.
    """
    try:
        ts = int(timestamp_header)
    except (ValueError, TypeError):
        return False

    if abs(int(time.time()) - ts) > tolerance:
        return False

    if not signature_header or not signature_header.startswith("sha256="):
        return False

    return hmac.compare_digest(_digest(secret, ts, payload), signature_header[7:])


def generate_webhook_secret() -> str:
    """Generate a signing secret for a webhook step."""
    return f"whsec_{secrets.token_urlsafe(32)}"
