# backend/sensei/services/session_expiry.py
"""
Periodic expiry of teacher sessions that outlived the inactivity timeout.
Expired sessions are closed and their token is invalidated.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sensei.core.config import Settings
from sensei.core.logging_config import get_logger
from sensei.models.teacher_session import INVALIDATED_TOKEN_PREFIX
from sensei.utils.dates import epoch_ms, utcnow

SWEEP_JOB_ID = "teacher_session_expiry"


def invalidated_token(username: str, now: datetime) -> str:
    return f"{INVALIDATED_TOKEN_PREFIX}{epoch_ms(now)}_{username}"


class SessionExpirySweep:
    def __init__(self, store, timeout_minutes: int, logger: Optional[logging.Logger] = None):
        self._store = store
        self._timeout = timedelta(minutes=timeout_minutes)
        self._logger = logger or get_logger("session_expiry")

    async def run(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        candidates = await self._store.find_expired(now - self._timeout)
        if not candidates:
            return 0

        by_username: Dict[str, List] = defaultdict(list)
        for doc in candidates:
            by_username[doc.get("username", "")].append(doc["_id"])

        expired = 0
        for username, session_ids in by_username.items():
            expired += await self._store.invalidate(session_ids, username, now, invalidated_token(username, now))

        self._logger.info("Expired %d teacher sessions across %d teachers", expired, len(by_username))
        return expired

    async def run_safely(self) -> int:
        """Scheduler entry point: a failed sweep is logged and retried next tick."""
        try:
            return await self.run()
        except Exception:
            self._logger.exception("Teacher session expiry sweep failed")
            return 0


def start_scheduler(sweep: SessionExpirySweep, settings: Settings) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep.run_safely,
        trigger=IntervalTrigger(minutes=settings.SESSION_SWEEP_INTERVAL_MINUTES),
        id=SWEEP_JOB_ID,
        name="Expire inactive teacher sessions",
        replace_existing=True,
    )
    scheduler.start()
    get_logger("session_expiry").info(
        "Session expiry scheduled every %d minutes (timeout %d minutes)",
        settings.SESSION_SWEEP_INTERVAL_MINUTES, settings.SESSION_TIMEOUT_MINUTES,
    )
    return scheduler


def shutdown_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
