# backend/sensei/main.py
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sensei.api.endpoints import health, teacher_session_exports, teacher_sessions
from sensei.core.config import settings
from sensei.core.errors import register_exception_handlers
from sensei.core.logging_config import configure_logging, get_logger
from sensei.crud.teacher_sessions import MongoSessionStore
from sensei.db.mongo import close_mongo_connection, connect_to_mongo, get_db
from sensei.services.session_expiry import SessionExpirySweep, shutdown_scheduler, start_scheduler

logger = configure_logging(settings)
request_logger = get_logger("http")

if not settings.is_production:
    logger.warning("Running in %s mode; error details are returned to clients", settings.ENVIRONMENT)


# [Lifespan] DB connection and the session-expiry job
@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_to_mongo()
    scheduler = None
    if settings.SESSION_SWEEP_ENABLED:
        sweep = SessionExpirySweep(MongoSessionStore(get_db()), settings.SESSION_TIMEOUT_MINUTES)
        await sweep.run_safely()
        scheduler = start_scheduler(sweep, settings)
    app.state.sweep_scheduler = scheduler
    yield
    shutdown_scheduler(scheduler)
    await close_mongo_connection()


app = FastAPI(title="Sensei Teacher Session API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    request_logger.debug("Incoming %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        request_logger.exception(
            "%s %s failed after %.1fms", request.method, request.url.path, (time.perf_counter() - started) * 1000
        )
        raise
    request_logger.info(
        "%s %s -> %d (%.1fms)",
        request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
    )
    return response


register_exception_handlers(app, settings, logger)


@app.get("/")
async def read_root():
    return {"message": "Backend is running!"}


app.include_router(health.router)

# export routes first: static paths must win over /{session_id}
app.include_router(
    teacher_session_exports.router, prefix="/api/v1/teacher-sessions", tags=["teacher-session-exports"]
)
app.include_router(teacher_sessions.router, prefix="/api/v1/teacher-sessions", tags=["teacher-sessions"])
