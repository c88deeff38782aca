"""places-details-refresh: re-fetch Google Places details older than PLACES_STALE_DAYS."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update

from tenantcron import settings
from tenantcron.db import engine as default_engine
from tenantcron.models import locations_table, organizations_table
from tenantcron.services.durable.executor import StepAttemptsExhausted, StepContext
from tenantcron.services.durable.registry import durable_function
from tenantcron.services.google.places_client import PlacesApiError, PlacesClient, get_places_client

logger = logging.getLogger(__name__)

EVENT_NAME = "places/details.refresh"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def find_stale_locations(stale_days: int, *, engine=None, now: Optional[datetime] = None) -> List[str]:
    """Non-archived locations of active orgs with a place id and stale (or no) details."""
    cutoff = (now or _now_utc()) - timedelta(days=stale_days)
    loc, o = locations_table, organizations_table
    with (engine or default_engine).connect() as conn:
        rows = conn.execute(
            select(loc.c.id)
            .select_from(loc.join(o, o.c.id == loc.c.org_id))
            .where(
                and_(
                    o.c.plan_status == "active",
                    loc.c.is_archived.is_(False),
                    loc.c.google_place_id.is_not(None),
                    or_(
                        loc.c.place_details_refreshed_at.is_(None),
                        loc.c.place_details_refreshed_at < cutoff,
                    ),
                )
            )
            .order_by(loc.c.id)
        ).all()
    return [row[0] for row in rows]


async def refresh_location_place(
    location_id: str,
    *,
    stale_days: int,
    client: PlacesClient,
    engine=None,
) -> Dict[str, Any]:
    engine = engine or default_engine
    loc = locations_table
    with engine.connect() as conn:
        row = conn.execute(
            select(loc.c.google_place_id, loc.c.place_details_refreshed_at).where(loc.c.id == location_id)
        ).mappings().first()

    if row is None or not row["google_place_id"]:
        return {"status": "skipped", "reason": "no_place_id"}
    refreshed_at = _as_utc(row["place_details_refreshed_at"])
    if refreshed_at is not None and refreshed_at >= _now_utc() - timedelta(days=stale_days):
        return {"status": "skipped", "reason": "already_fresh"}

    try:
        details = await client.get_place_details(row["google_place_id"])
    except PlacesApiError as exc:
        if not exc.permanent:
            raise
        logger.warning(f"places_refresh: location {location_id} lookup rejected: {exc}")
        return {"status": "failed", "error": f"{location_id}: {exc}"}

    with engine.begin() as conn:
        conn.execute(
            update(loc)
            .where(loc.c.id == location_id)
            .values(
                place_details_json=json.dumps(details, ensure_ascii=False),
                place_details_refreshed_at=_now_utc(),
            )
        )
    return {"status": "refreshed"}


@durable_function("places-details-refresh", event=EVENT_NAME, max_step_seconds=60)
async def places_refresh(event: Dict[str, Any], step: StepContext) -> Dict[str, Any]:
    client = get_places_client()
    if client is None:
        logger.warning("places_refresh: GOOGLE_PLACES_API_KEY not configured, skipping")
        return {"ok": False, "reason": "GOOGLE_PLACES_API_KEY not configured"}

    stale_days = int(event.get("stale_days") or settings.PLACES_STALE_DAYS)
    location_ids = await step.run(
        "fetch-stale-locations",
        partial(find_stale_locations, stale_days),
    )

    summary: Dict[str, Any] = {"ok": True, "total": len(location_ids), "refreshed": 0, "failed": 0, "skipped": 0}
    outcomes = await step.run_all(
        [
            (
                f"refresh-place-{location_id}",
                partial(refresh_location_place, location_id, stale_days=stale_days, client=client),
            )
            for location_id in location_ids
        ]
    )
    for outcome in outcomes:
        if isinstance(outcome, StepAttemptsExhausted):
            outcome = {"status": "failed"}
        status = outcome.get("status")
        if status == "refreshed":
            summary["refreshed"] += 1
        elif status == "failed":
            summary["failed"] += 1
        else:
            summary["skipped"] += 1

    logger.info(f"places_refresh: {summary}")
    return summary
