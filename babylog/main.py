"""FastAPI app: lifespan, CORS, error mapping, router registration."""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from .api.events import router as events_router, sleep_router
from .api.stats import router as stats_router
from .api.corrections import router as corrections_router
from .core.database import get_database
from .core.errors import BabyLogError
from .core.settings import settings
from .services.sql_store import SqlEventStore
from .services.tracker import get_tracker, reset_tracker

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


# Used by: FastAPI app (connects DB and creates schema on startup, tears down on shutdown)
@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_database()
    if settings.DATABASE_URL:
        await db.connect(settings.DATABASE_URL, settings.DB_STATEMENT_TIMEOUT_MS)
        await SqlEventStore(db).create_schema()
    get_tracker()

    yield

    reset_tracker()
    await db.disconnect()


app = FastAPI(
    title="Baby Log API",
    version="1.0.0",
    description="babylog - caregiving event log, sleep corrections and analytics",
    lifespan=lifespan
)

cors_origins = settings.CORS_ORIGINS.copy()
if settings.CORS_EXTRA_ORIGINS:
    cors_origins.extend([o.strip() for o in settings.CORS_EXTRA_ORIGINS.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BabyLogError)
async def babylog_error_handler(request: Request, exc: BabyLogError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


app.include_router(events_router)
app.include_router(sleep_router)
app.include_router(stats_router)
app.include_router(corrections_router)
