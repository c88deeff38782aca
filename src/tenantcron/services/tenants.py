"""Tenant enumeration for batch jobs.

Enumerators are read-only projections over organizations/locations. They do
not filter by plan tier: eligibility is applied by the batch runner so that
ineligible tenants show up as `skipped` in the batch result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError

from tenantcron.models import locations_table, organizations_table

logger = logging.getLogger(__name__)


class EnumerationError(Exception):
    """Raised when the eligible tenant set cannot be loaded."""


class PlanTier(str, Enum):
    TRIAL = "trial"
    STARTER = "starter"
    GROWTH = "growth"
    AGENCY = "agency"

    @property
    def rank(self) -> int:
        return _PLAN_RANK[self]


_PLAN_RANK = {
    PlanTier.TRIAL: 0,
    PlanTier.STARTER: 1,
    PlanTier.GROWTH: 2,
    PlanTier.AGENCY: 3,
}


def plan_satisfies(plan: Optional[str], required: PlanTier) -> bool:
    """True when `plan` is at or above `required`. Unknown plans never satisfy."""
    try:
        tier = PlanTier(plan)
    except ValueError:
        return False
    return tier.rank >= required.rank


@dataclass(frozen=True)
class TenantHandle:
    tenant_id: str
    org_id: str
    location_id: Optional[str]
    plan_tier: str


def enumerate_locations(conn) -> List[TenantHandle]:
    """One tenant per non-archived location of an active organization."""
    o, loc = organizations_table, locations_table
    stmt = (
        select(loc.c.id, loc.c.org_id, o.c.plan)
        .select_from(loc.join(o, o.c.id == loc.c.org_id))
        .where(and_(o.c.plan_status == "active", loc.c.is_archived.is_(False)))
        .order_by(loc.c.org_id, loc.c.created_at)
    )
    try:
        rows = conn.execute(stmt).mappings().all()
    except SQLAlchemyError as exc:
        raise EnumerationError(str(exc)) from exc
    logger.info(f"enumerate_locations: found {len(rows)} locations")
    return [
        TenantHandle(
            tenant_id=row["id"],
            org_id=row["org_id"],
            location_id=row["id"],
            plan_tier=row["plan"],
        )
        for row in rows
    ]


def enumerate_organizations(conn) -> List[TenantHandle]:
    """One tenant per active organization.

    The handle carries the primary location (else the oldest non-archived one);
    organizations without any location are still yielded with location_id=None.
    """
    o, loc = organizations_table, locations_table
    try:
        orgs = conn.execute(
            select(o.c.id, o.c.plan)
            .where(o.c.plan_status == "active")
            .order_by(o.c.created_at, o.c.id)
        ).mappings().all()
        locs = conn.execute(
            select(loc.c.id, loc.c.org_id)
            .where(loc.c.is_archived.is_(False))
            .order_by(loc.c.org_id, loc.c.is_primary.desc(), loc.c.created_at)
        ).mappings().all()
    except SQLAlchemyError as exc:
        raise EnumerationError(str(exc)) from exc

    first_location: dict[str, str] = {}
    for row in locs:
        first_location.setdefault(row["org_id"], row["id"])
    logger.info(f"enumerate_organizations: found {len(orgs)} organizations")

    return [
        TenantHandle(
            tenant_id=row["id"],
            org_id=row["id"],
            location_id=first_location.get(row["id"]),
            plan_tier=row["plan"],
        )
        for row in orgs
    ]
