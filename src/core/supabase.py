"""Supabase client singleton and database readiness check."""

import logging
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from src.core.config import get_settings

logger = logging.getLogger(__name__)

# Tables written while a payment is confirmed, with a column to read
RECONCILIATION_TABLES = {
    "orders": "id",
    "products": "id",
    "stock_movements": "id",
    "processed_payments": "payment_id",
    "audit_logs": "id",
}


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton.

    Uses the secret key, which bypasses RLS at the PostgREST level. Orders,
    stock and audit rows are written on behalf of the system, never on
    behalf of a browser session.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def check_database_connection() -> dict[str, Any]:
    """Check that every reconciliation table is readable.

    Returns:
        dict: 'healthy' flag, plus 'error' naming the first failing table.
    """
    try:
        client = get_supabase_client()
    except Exception as e:
        logger.error("Supabase client could not be created: %s", str(e))
        return {"healthy": False, "error": str(e)}

    for table, column in RECONCILIATION_TABLES.items():
        try:
            client.table(table).select(column).limit(1).execute()
        except Exception as e:
            logger.warning("Readiness check failed on table %s: %s", table, str(e))
            return {"healthy": False, "error": f"{table}: {e}"}
    return {"healthy": True}
