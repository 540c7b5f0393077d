"""Audit log collaborators."""

import logging
from typing import Protocol

from supabase import Client

from src.models.audit import AuditEntry
from src.repositories.supabase import SupabaseRepository

logger = logging.getLogger(__name__)


class AuditLogService(Protocol):
    async def record(self, entry: AuditEntry) -> None: ...


class InMemoryAuditLogService:
    """Keeps entries in a list, oldest first."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def entries_for(self, record_id: str) -> list[AuditEntry]:
        return [entry for entry in self.entries if entry.record_id == record_id]


class SupabaseAuditLogService(SupabaseRepository):
    """Appends entries to the ``audit_logs`` table."""

    table_name = "audit_logs"
    resource = "AuditLog"

    def __init__(self, client: Client, timeout_seconds: float | None = None) -> None:
        super().__init__(client, timeout_seconds)

    async def record(self, entry: AuditEntry) -> None:
        await self._execute(self._table().insert(entry.model_dump(mode="json")).execute)
        logger.debug("Audit %s %s/%s", entry.action.value, entry.table_name, entry.record_id)
