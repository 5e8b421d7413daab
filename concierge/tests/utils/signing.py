from __future__ import annotations

import hashlib
import hmac
import time


WEBHOOK_SECRET = "whsec_unit"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    # Same scheme the processor uses: HMAC-SHA256 over "<timestamp>.<payload>".
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
