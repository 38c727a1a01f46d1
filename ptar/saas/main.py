import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from ..config import settings
from ..db import ensure_unique_index
from ..limiter import limiter
from ..middleware import SecurityHeadersMiddleware, unhandled_exception
from .routers import (
    api_keys,
    audit,
    auth,
    checklist,
    dashboard,
    documents,
    environmental,
    equipment,
    maintenance,
    notifications,
    opex,
    organization,
    plants,
    tickets,
    users,
    webhooks,
)
from .schema_sql import SAAS_SCHEMA_SQL, SAAS_UNIQUE_INDEXES
from .security import saas_connect

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{settings.app_name} SaaS", debug=settings.debug)

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

for module in (auth, organization, users, api_keys, webhooks, audit,
               plants, environmental, maintenance, tickets, opex, documents,
               equipment, checklist, dashboard, notifications):
    app.include_router(module.router, prefix="/api")


def init_saas_db() -> None:
    with saas_connect() as con:
        con.executescript(SAAS_SCHEMA_SQL)
        cur = con.cursor()
        for table, index, key in SAAS_UNIQUE_INDEXES:
            removed = ensure_unique_index(cur, table, index, key)
            if removed:
                logger.warning("Removed %d duplicate rows from %s before indexing", removed, table)
        con.commit()


@app.on_event("startup")
async def startup():
    init_saas_db()
    logger.info("%s SaaS started (%s), database %s", settings.app_name, settings.environment, settings.saas_db_path)


@app.get("/health")
@limiter.exempt
def health():
    return {"status": "ok", "environment": settings.environment, "mode": "saas"}
