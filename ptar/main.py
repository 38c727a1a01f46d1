import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .auth import ensure_default_users
from .config import settings
from .db import add_missing_columns, connect, ensure_unique_index
from .limiter import limiter
from .middleware import SecurityHeadersMiddleware, unhandled_exception
from .routers import (
    analytics,
    audit,
    auth,
    checklist,
    dashboard,
    documents,
    emergencies,
    equipment,
    maintenance,
    notifications,
    opex,
    plants,
    tickets,
)
from .scheduler import start_scheduler
from .schema_sql import MIGRATIONS, SCHEMA_SQL, UNIQUE_INDEXES
from .seed import seed_demo_data

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(Exception, unhandled_exception)

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (auth, plants, analytics, maintenance, emergencies, equipment, opex,
               documents, tickets, checklist, dashboard, notifications, audit):
    app.include_router(module.router, prefix="/api")


def init_db() -> None:
    with connect() as con:
        cur = con.cursor()
        cur.executescript(SCHEMA_SQL)
        for table, columns in MIGRATIONS.items():
            add_missing_columns(cur, table, columns)
        for table, index, key in UNIQUE_INDEXES:
            removed = ensure_unique_index(cur, table, index, key)
            if removed:
                logger.warning("Removed %d duplicate rows from %s before indexing", removed, table)
        ensure_default_users(cur)
        if settings.seed_demo_data and seed_demo_data(cur):
            logger.info("Demo data loaded")
        con.commit()


@app.on_event("startup")
async def startup():
    init_db()
    logger.info("%s started (%s), database %s", settings.app_name, settings.environment, settings.db_path)
    app.state.scheduler = start_scheduler()


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "scheduler", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Notification scheduler stopped")


@app.get("/health")
@limiter.exempt
def health():
    return {"status": "ok", "environment": settings.environment}
