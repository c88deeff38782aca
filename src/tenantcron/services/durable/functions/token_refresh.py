"""gbp-token-refresh: refresh Google OAuth tokens that expire soon.

Selection is by predicate ("expires within the window"), never by "what was
refreshed last time", so a repeated step or a repeated run against an
already-refreshed token set makes no extra calls to Google.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update

from tenantcron import settings
from tenantcron.db import engine as default_engine
from tenantcron.models import google_oauth_tokens_table
from tenantcron.services.durable.executor import StepAttemptsExhausted, StepContext
from tenantcron.services.durable.registry import durable_function
from tenantcron.services.google.oauth_client import GoogleTokenClient, TokenRefreshError

logger = logging.getLogger(__name__)

EVENT_NAME = "gbp/token.refresh"
EXPIRY_MARGIN = timedelta(minutes=5)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_token_expired(
    expires_at: Optional[datetime],
    *,
    now: Optional[datetime] = None,
    margin: timedelta = EXPIRY_MARGIN,
) -> bool:
    """True when the token is missing an expiry or expires within `margin`."""
    if expires_at is None:
        return True
    now = now or _now_utc()
    return _as_utc(expires_at) < now + margin


def get_token_client() -> GoogleTokenClient:
    return GoogleTokenClient()


def find_expiring_tokens(window_minutes: int, *, engine=None, now: Optional[datetime] = None) -> List[str]:
    """Org ids whose token has no expiry or expires before now + window."""
    threshold = (now or _now_utc()) + timedelta(minutes=window_minutes)
    t = google_oauth_tokens_table
    with (engine or default_engine).connect() as conn:
        rows = conn.execute(
            select(t.c.org_id)
            .where(or_(t.c.expires_at.is_(None), t.c.expires_at < threshold))
            .order_by(t.c.org_id)
        ).all()
    return [row[0] for row in rows]


async def refresh_org_token(
    org_id: str,
    *,
    window_minutes: int,
    client: GoogleTokenClient,
    engine=None,
) -> Dict[str, Any]:
    engine = engine or default_engine
    t = google_oauth_tokens_table
    with engine.connect() as conn:
        row = conn.execute(
            select(t.c.refresh_token, t.c.expires_at).where(t.c.org_id == org_id)
        ).mappings().first()

    if row is None:
        return {"status": "skipped", "reason": "token_missing"}
    if not is_token_expired(row["expires_at"], margin=timedelta(minutes=window_minutes)):
        # Already refreshed by an earlier attempt whose ledger write was lost.
        return {"status": "skipped", "reason": "already_fresh"}

    try:
        refreshed = await client.refresh(row["refresh_token"])
    except TokenRefreshError as exc:
        if not exc.permanent:
            raise
        logger.warning(f"token_refresh: org {org_id} refresh rejected: {exc}")
        return {"status": "failed", "error": f"{org_id}: {exc}"}

    new_expires_at = _now_utc() + timedelta(seconds=refreshed.expires_in)
    with engine.begin() as conn:
        conn.execute(
            update(t)
            .where(t.c.org_id == org_id)
            .values(
                access_token=refreshed.access_token,
                expires_at=new_expires_at,
                updated_at=_now_utc(),
            )
        )
    return {"status": "refreshed", "expires_at": new_expires_at.isoformat()}


@durable_function("gbp-token-refresh", event=EVENT_NAME, max_step_seconds=60)
async def token_refresh(event: Dict[str, Any], step: StepContext) -> Dict[str, Any]:
    window = int(event.get("window_minutes") or settings.TOKEN_REFRESH_WINDOW_MINUTES)

    org_ids = await step.run(
        "fetch-expiring-tokens",
        partial(find_expiring_tokens, window),
    )

    client = get_token_client()
    summary: Dict[str, Any] = {"total": len(org_ids), "refreshed": 0, "failed": 0, "skipped": 0, "errors": []}
    outcomes = await step.run_all(
        [
            (f"refresh-token-{org_id}", partial(refresh_org_token, org_id, window_minutes=window, client=client))
            for org_id in org_ids
        ]
    )
    for org_id, outcome in zip(org_ids, outcomes):
        if isinstance(outcome, StepAttemptsExhausted):
            outcome = {"status": "failed", "error": f"{org_id}: {outcome.last_error}"}
        status = outcome.get("status")
        if status == "refreshed":
            summary["refreshed"] += 1
        elif status == "failed":
            summary["failed"] += 1
            summary["errors"].append(outcome.get("error", org_id))
        else:
            summary["skipped"] += 1

    logger.info(f"token_refresh: {summary}")
    return summary
