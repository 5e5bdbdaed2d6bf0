"""Profile lookups used for authorization."""

from uuid import UUID

from supabase import Client

from src.core.supabase import get_supabase_client


class ProfileService:
    """Reads application roles from the profiles table."""

    def __init__(self, supabase_client: Client | None = None) -> None:
        """Initialize profile service.

        Args:
            supabase_client: Optional Supabase client for testing.
        """
        self.client = supabase_client or get_supabase_client()

    async def get_role(self, user_id: UUID) -> str | None:
        """Get the application role of a user.

        Args:
            user_id: The auth user ID (profiles.id).

        Returns:
            str | None: The role, or None if the user has no profile.
        """
        response = (
            self.client.table("profiles")
            .select("role")
            .eq("id", str(user_id))
            .maybe_single()
            .execute()
        )
        if not response or not response.data:
            return None
        return response.data.get("role")
