"""Unit tests for the database readiness check."""

from unittest.mock import MagicMock, patch

import pytest

from src.core.supabase import RECONCILIATION_TABLES, check_database_connection


class TestCheckDatabaseConnection:
    """Tests for check_database_connection."""

    @pytest.mark.asyncio
    @patch("src.core.supabase.get_supabase_client")
    async def test_reads_every_table(self, mock_get_client: MagicMock) -> None:
        client = mock_get_client.return_value

        result = await check_database_connection()

        assert result == {"healthy": True}
        read_tables = [call.args[0] for call in client.table.call_args_list]
        assert read_tables == list(RECONCILIATION_TABLES)

    @pytest.mark.asyncio
    @patch("src.core.supabase.get_supabase_client")
    async def test_names_failing_table(self, mock_get_client: MagicMock) -> None:
        """Test that the first unreadable table is reported."""
        client = mock_get_client.return_value

        def table(name: str) -> MagicMock:
            if name == "stock_movements":
                raise RuntimeError('relation "stock_movements" does not exist')
            return MagicMock()

        client.table.side_effect = table

        result = await check_database_connection()

        assert result["healthy"] is False
        assert result["error"].startswith("stock_movements:")

    @pytest.mark.asyncio
    @patch("src.core.supabase.get_supabase_client", side_effect=RuntimeError("Invalid URL"))
    async def test_client_creation_failure(self, mock_get_client: MagicMock) -> None:
        assert await check_database_connection() == {"healthy": False, "error": "Invalid URL"}
