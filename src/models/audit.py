"""Audit log model type definitions."""

from datetime import datetime
from typing import Any, TypedDict


class AuditLogEntry(TypedDict):
    """audit_logs table row. Write-only; never edited or deleted."""

    action: str
    resource_type: str
    resource_id: str | None
    actor: str
    metadata: dict[str, Any]
    created_at: datetime
