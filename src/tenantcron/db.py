"""Database engine shared by the API, Celery workers and scripts."""

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from tenantcron import settings


def normalize_database_url(url: str) -> str:
    """Force the psycopg2 driver for PostgreSQL URLs."""
    if "psycopg://" in url:
        return url.replace("psycopg://", "psycopg2://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg2://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


def make_engine(url: str):
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        # In-memory SQLite (tests, local smoke runs) must share one connection.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(settings.DATABASE_URL)
