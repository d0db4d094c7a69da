import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from health_portal.config import get_settings
from health_portal.db.postgres import engine, Base
from health_portal.db.storage import get_storage
from health_portal.errors import StoreUnavailable
import health_portal.models  # noqa: F401  register all ORM models with Base.metadata
from health_portal.api.middleware.rate_limit import RateLimitMiddleware
from health_portal.api.routes import access, account, auth, consent, documents, export, parse, providers, records

settings = get_settings()
logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # Statement echo is controlled by DEBUG through the engine, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Rate limiting (added before CORS so it runs after CORS in the middleware stack)
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(auth.router, prefix=settings.API_PREFIX, tags=["Auth"])
app.include_router(records.router, prefix=settings.API_PREFIX, tags=["Records"])
app.include_router(documents.router, prefix=settings.API_PREFIX, tags=["Documents"])
app.include_router(consent.router, prefix=settings.API_PREFIX, tags=["Consent"])
app.include_router(providers.router, prefix=settings.API_PREFIX, tags=["Providers"])
app.include_router(access.router, prefix=settings.API_PREFIX, tags=["Provider Access"])
app.include_router(export.router, prefix=settings.API_PREFIX, tags=["Export"])
app.include_router(account.router, prefix=settings.API_PREFIX, tags=["Account"])
app.include_router(parse.router, prefix=settings.API_PREFIX, tags=["Ingest"])


@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        await get_storage().ensure_bucket()
    except StoreUnavailable as e:
        logger.warning("Object storage not ready (uploads will fail until it is): %s", e)


@app.on_event("shutdown")
async def shutdown():
    await engine.dispose()


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}
