"""Audit log repository."""

from datetime import datetime
from typing import Any

from src.models.audit import AuditLogEntry
from src.repositories.base import SupabaseRepository


class AuditRepository(SupabaseRepository):
    """Append-only access to audit_logs."""

    def insert_entry(self, row: dict[str, Any]) -> None:
        """Insert an audit log entry."""
        self.supabase.table("audit_logs").insert(row).execute()

    def list_entries(
        self,
        action: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """List audit entries matching the filters, newest first."""
        query = self.supabase.table("audit_logs").select("*")
        if action:
            query = query.eq("action", action)
        if resource_type:
            query = query.eq("resource_type", resource_type)
        if resource_id:
            query = query.eq("resource_id", resource_id)
        if start_date:
            query = query.gte("created_at", start_date.isoformat())
        if end_date:
            query = query.lte("created_at", end_date.isoformat())

        response = query.order("created_at", desc=True).limit(limit).execute()
        return response.data or []
