# auth.py
import hmac
from typing import Optional


def authorize(authorization_header: Optional[str], configured_secret: Optional[str]) -> bool:
    """
    Shared-secret bearer check.

    With no secret configured every request passes. That mode exists for local
    testing and is unsafe in production. Otherwise the header must be exactly
    `Bearer <secret>`.
    """
    if not configured_secret:
        return True
    if not authorization_header:
        return False
    expected = f"Bearer {configured_secret}"
    return hmac.compare_digest(authorization_header.encode("utf-8"), expected.encode("utf-8"))
