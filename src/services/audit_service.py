"""Audit log service for security and business relevant events."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from src.models.audit import AuditLogEntry
from src.repositories.audit_repository import AuditRepository

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
MAX_LIST_LIMIT = 500


def _json_safe(metadata: dict[str, Any]) -> dict[str, Any]:
    """Convert Decimal/UUID/datetime values so the blob serializes as JSON."""
    return json.loads(json.dumps(metadata, default=str))


class AuditLogService:
    """Writes immutable audit entries.

    `record` is fire-and-forget from the caller's perspective: a failure to
    write an entry is logged locally and never fails the business operation
    it documents.
    """

    def __init__(self, repository: AuditRepository | None = None) -> None:
        """Initialize audit service.

        Args:
            repository: Optional audit repository for testing.
        """
        self.repository = repository or AuditRepository()

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str | None,
        metadata: dict[str, Any] | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> bool:
        """Append an audit entry.

        Args:
            action: Dotted action name, e.g. "payment.completed".
            resource_type: Kind of resource ("payment", "order", "product").
            resource_id: Identifier of the resource.
            metadata: Free-form JSON details.
            actor: User id/email, or "system" for automated channels.

        Returns:
            bool: True if the entry was written. Callers normally ignore it.
        """
        row = {
            "action": action,
            "resource_type": resource_type,
            "resource_id": str(resource_id) if resource_id is not None else None,
            "actor": actor or SYSTEM_ACTOR,
            "metadata": _json_safe(metadata or {}),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.repository.insert_entry(row)
            return True
        except Exception as e:
            logger.error(
                "Failed to write audit log %s for %s %s: %s (metadata=%s)",
                action,
                resource_type,
                resource_id,
                str(e),
                row["metadata"],
            )
            return False

    async def list_entries(
        self,
        action: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """List audit entries for reconciliation, newest first."""
        return self.repository.list_entries(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            start_date=start_date,
            end_date=end_date,
            limit=max(1, min(limit, MAX_LIST_LIMIT)),
        )
