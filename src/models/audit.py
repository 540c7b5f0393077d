"""Audit trail entries."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.common import utc_now


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuditEntry(BaseModel):
    """One recorded change to a stored record."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    table_name: str = Field(min_length=1)
    record_id: str = Field(min_length=1)
    action: AuditAction
    actor_id: str | None = None
    old_data: dict[str, Any] | None = None
    new_data: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)
