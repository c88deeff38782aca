"""Dependencies for FastAPI endpoints."""

import os
from typing import Optional

from fastapi import Header


class CronUnauthorized(Exception):
    """Raised when a /cron request does not carry the shared scheduler secret."""


def authorize(header_value: Optional[str], expected_secret: Optional[str]) -> bool:
    """Return True when the Authorization header carries the shared cron secret.

    The comparison is exact: no trimming, no case-folding. An unset or empty
    secret rejects every request.
    """
    if not expected_secret:
        return False
    return header_value == f"Bearer {expected_secret}"


async def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Reject the request unless `Authorization: Bearer <CRON_SECRET>` matches exactly.

    CRON_SECRET is read per request so rotating it does not need a restart.
    """
    if not authorize(authorization, os.getenv("CRON_SECRET")):
        raise CronUnauthorized()
