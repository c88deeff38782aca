import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tenantcron import settings
from tenantcron.db import engine
from tenantcron.deps import CronUnauthorized
from tenantcron.routers import cron
from tenantcron.services.jobs.processors import load_processor_modules

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Domain modules register their per-tenant processors on import.
    load_processor_modules()
    yield


app = FastAPI(title="Tenant Cron", lifespan=lifespan)


@app.exception_handler(CronUnauthorized)
async def cron_unauthorized_handler(request: Request, exc: CronUnauthorized):
    return JSONResponse(status_code=401, content={"error": "Unauthorized"})


@app.get("/api/v1/health")
def health():
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok"}


app.include_router(cron.router)
