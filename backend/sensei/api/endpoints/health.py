# backend/sensei/api/endpoints/health.py

from fastapi import APIRouter, Depends, Request
from pymongo.errors import PyMongoError

from sensei.api.deps import get_database, get_settings
from sensei.core.config import Settings
from sensei.crud.teacher_sessions import COLLECTION_NAME

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(
    request: Request,
    db=Depends(get_database),
    app_settings: Settings = Depends(get_settings),
):
    """
    MongoDB reachability plus the state of the session-expiry job.
    A stopped sweep leaves stale sessions live, so it degrades the status.
    """
    mongo_ok = False
    mongo_error = None

    try:
        await db.command("ping")
        mongo_ok = True
    except PyMongoError as e:
        mongo_error = str(e)

    sweep_enabled = app_settings.SESSION_SWEEP_ENABLED
    scheduler = getattr(request.app.state, "sweep_scheduler", None)
    sweep_running = bool(scheduler and scheduler.running)
    sweep_ok = sweep_running or not sweep_enabled

    return {
        "status": "ok" if mongo_ok and sweep_ok else "degraded",
        "mongo": mongo_ok,
        "mongo_error": mongo_error,
        "collection": COLLECTION_NAME,
        "session_sweep": {"enabled": sweep_enabled, "running": sweep_running},
    }
