# backend/sensei/crud/audit_logs.py
"""
Audit trail writer for the `logs` collection.

Audit records are best effort: a failed audit write is logged and never
fails the request that produced it.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from sensei.core.logging_config import get_logger
from sensei.utils.dates import utcnow

COLLECTION_NAME = "logs"
ANONYMOUS = "anonymous"


@dataclass
class AuditContext:
    """Who is acting and from where."""
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def diff_fields(before: Dict[str, Any], after: Dict[str, Any], tracked: Iterable[str]) -> List[Dict[str, Any]]:
    changes = []
    for field in tracked:
        old, new = before.get(field), after.get(field)
        if old != new:
            changes.append({"field": field, "old_value": old, "new_value": new})
    return changes


class AuditLogWriter:
    def __init__(self, db, module: str, logger: Optional[logging.Logger] = None):
        self._col = db[COLLECTION_NAME]
        self._module = module
        self._logger = logger or get_logger("audit")

    async def _write(
        self,
        action: str,
        ctx: AuditContext,
        description: str,
        document_id: Optional[str] = None,
        changes: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        record = {
            "action": action,
            "module": self._module,
            "description": description,
            "user_id": ctx.user_id or ANONYMOUS,
            "user_role": ctx.user_role,
            "document_id": document_id,
            "changes": changes or [],
            "ip": ctx.ip,
            "user_agent": ctx.user_agent,
            "timestamp": utcnow(),
        }
        try:
            await self._col.insert_one(record)
        except PyMongoError:
            self._logger.exception("Failed to write %s audit record for %s", action, document_id)

    async def log_create(self, ctx: AuditContext, document_id: str, description: str) -> None:
        await self._write("create", ctx, description, document_id)

    async def log_update(
        self,
        ctx: AuditContext,
        document_id: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        tracked: Iterable[str],
        description: str,
    ) -> None:
        await self._write("update", ctx, description, document_id, diff_fields(before, after, tracked))

    async def log_delete(self, ctx: AuditContext, document_id: str, description: str) -> None:
        await self._write("delete", ctx, description, document_id)

    async def log_error(self, ctx: AuditContext, description: str, document_id: Optional[str] = None) -> None:
        await self._write("error", ctx, description, document_id)

    @asynccontextmanager
    async def recording_failures(self, ctx: AuditContext, operation: str, document_id: Optional[str] = None):
        """
        Records a failure of the wrapped write path in the audit trail,
        then re-raises it.
        """
        try:
            yield
        except Exception as exc:
            await self.log_error(ctx, f"{operation} failed: {exc}", document_id)
            raise
