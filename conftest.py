import os

# Must be set before tenantcron.settings / tenantcron.db are imported.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.setdefault("APP_VERSION", "test")
os.environ.pop("CRON_SECRET", None)

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert

from tenantcron.db import engine
from tenantcron.models import (
    google_oauth_tokens_table,
    locations_table,
    metadata,
    organizations_table,
)
from tenantcron.services import reporting


CRON_SECRET = "test-cron-secret"


@pytest.fixture(autouse=True)
def fresh_db():
    metadata.drop_all(engine)
    metadata.create_all(engine)
    yield engine
    metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def clean_kill_switches(monkeypatch):
    for key in list(os.environ):
        if key.startswith("STOP_") and key.endswith("_CRON"):
            monkeypatch.delenv(key, raising=False)


class RecordingTracker:
    def __init__(self):
        self.captured = []

    def capture_exception(self, err, tags):
        self.captured.append((err, dict(tags)))


@pytest.fixture
def tracker():
    previous = reporting.get_error_tracker()
    recorder = RecordingTracker()
    reporting.set_error_tracker(recorder)
    yield recorder
    reporting.set_error_tracker(previous)


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    return CRON_SECRET


def add_org(org_id, *, plan="growth", plan_status="active", created_at=None):
    with engine.begin() as conn:
        conn.execute(
            insert(organizations_table).values(
                id=org_id,
                name=f"Org {org_id}",
                plan=plan,
                plan_status=plan_status,
                created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
            )
        )


def add_location(
    location_id,
    org_id,
    *,
    is_primary=False,
    is_archived=False,
    google_place_id=None,
    place_details_refreshed_at=None,
    created_at=None,
):
    with engine.begin() as conn:
        conn.execute(
            insert(locations_table).values(
                id=location_id,
                org_id=org_id,
                business_name=f"Business {location_id}",
                city="Austin",
                state="TX",
                is_primary=is_primary,
                is_archived=is_archived,
                google_place_id=google_place_id,
                place_details_refreshed_at=place_details_refreshed_at,
                created_at=created_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
            )
        )


def add_token(org_id, *, expires_in_minutes=None, refresh_token=None):
    expires_at = None
    if expires_in_minutes is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes)
    with engine.begin() as conn:
        conn.execute(
            insert(google_oauth_tokens_table).values(
                org_id=org_id,
                access_token="old-access",
                refresh_token=refresh_token or f"refresh-{org_id}",
                expires_at=expires_at,
            )
        )
