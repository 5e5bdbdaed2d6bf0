"""Shared helpers for Supabase-backed repositories."""

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.supabase import get_supabase_client

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


class DuplicateRecordError(Exception):
    """Raised when an insert hits a unique constraint.

    Repositories translate the database conflict into this error so callers
    can treat "someone else already wrote this key" as a normal outcome.
    """

    def __init__(self, table: str, message: str = "") -> None:
        self.table = table
        super().__init__(message or f"Duplicate record in {table}")


def is_unique_violation(exc: Exception) -> bool:
    """Check whether a PostgREST error is a unique constraint violation."""
    return isinstance(exc, PostgrestAPIError) and str(exc.code) == UNIQUE_VIOLATION


class SupabaseRepository:
    """Base class holding a lazily created Supabase client."""

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize repository.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self._supabase_client = supabase_client

    @property
    def supabase(self) -> Client:
        """Get Supabase client."""
        if self._supabase_client is None:
            self._supabase_client = get_supabase_client()
        return self._supabase_client
