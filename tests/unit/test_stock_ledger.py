"""Unit tests for StockLedger."""

import pytest

from src.services.stock_ledger import (
    CAS_MAX_ATTEMPTS,
    MAX_STOCK_QUANTITY,
    DuplicateMovementError,
    InsufficientStockError,
    LedgerCommitError,
    LedgerRollbackError,
    StockConflictError,
    StockLedger,
    UnknownProductError,
    normalize_items,
)
from tests.fakes import FakeStockRepository

ORDER_ID = "660e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def ledger(stock_repo: FakeStockRepository) -> StockLedger:
    return StockLedger(stock_repo)


class TestNormalizeItems:
    """Tests for normalize_items."""

    def test_merges_duplicate_products(self) -> None:
        """Test that quantities of the same product are summed."""
        assert normalize_items([("prod-a", 2), ("prod-b", 1), ("prod-a", 3)]) == {"prod-a": 5, "prod-b": 1}

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True])
    def test_rejects_invalid_quantities(self, quantity: object) -> None:
        """Test that non-positive and non-integer quantities are rejected."""
        with pytest.raises(ValueError):
            normalize_items([("prod-a", quantity)])

    def test_rejects_empty_list(self) -> None:
        """Test that an empty item list is rejected."""
        with pytest.raises(ValueError, match="At least one item"):
            normalize_items([])


class TestDecrease:
    """Tests for decrease."""

    @pytest.mark.asyncio
    async def test_decrements_all_products_and_records_movements(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test a successful decrease changes counters and writes applied movements."""
        result = await ledger.decrease([("prod-a", 3), ("prod-b", 2)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-a") == 7
        assert stock_repo.quantity("prod-b") == 3
        assert result.direction == "out"
        assert {m["product_id"]: (m["quantity_before"], m["quantity_after"]) for m in result.movements} == {
            "prod-a": (10, 7),
            "prod-b": (5, 3),
        }
        applied = stock_repo.applied(order_id=ORDER_ID, direction="out")
        assert len(applied) == 2
        assert all(m["cause_id"] == "CAP-1" and m["kind"] == "sale" for m in applied)

    @pytest.mark.asyncio
    async def test_insufficient_stock_lists_every_short_product(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that all shortages are reported and nothing changes."""
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.decrease(
                [("prod-a", 11), ("prod-b", 6), ("prod-missing", 1)],
                order_id=ORDER_ID,
                cause_id="CAP-1",
            )

        shortages = {s.product_id: s for s in exc_info.value.shortages}
        assert set(shortages) == {"prod-a", "prod-b", "prod-missing"}
        assert shortages["prod-a"].available == 10
        assert shortages["prod-a"].shortfall == 1
        assert shortages["prod-missing"].available == 0
        assert stock_repo.quantity("prod-a") == 10
        assert stock_repo.quantity("prod-b") == 5
        assert stock_repo.applied() == []
        assert {m["state"] for m in stock_repo.movements} == {"voided"}

    @pytest.mark.asyncio
    async def test_exact_stock_reaches_zero(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test that selling the last unit is allowed."""
        await ledger.decrease([("prod-b", 5)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-b") == 0

    @pytest.mark.asyncio
    async def test_second_decrease_for_same_cause_is_rejected(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that the movement anchor prevents a double decrement."""
        await ledger.decrease([("prod-a", 2)], order_id=ORDER_ID, cause_id="CAP-1")

        with pytest.raises(DuplicateMovementError):
            await ledger.decrease([("prod-a", 2)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-a") == 8

    @pytest.mark.asyncio
    async def test_second_decrease_after_selling_out_is_a_duplicate(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that a replay after the last unit sold is not reported as a shortage."""
        await ledger.decrease([("prod-b", 5)], order_id=ORDER_ID, cause_id="CAP-1")

        with pytest.raises(DuplicateMovementError):
            await ledger.decrease([("prod-b", 5)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-b") == 0
        assert len(stock_repo.applied(order_id=ORDER_ID, direction="out")) == 1

    @pytest.mark.asyncio
    async def test_shortage_during_apply_lists_every_short_product(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that stock drained by another writer mid-call reports all shortages."""
        drained = []

        def other_writer(product_id: str) -> None:
            if not drained:
                drained.append(product_id)
                stock_repo.products["prod-a"]["stock_quantity"] = 1
                stock_repo.products["prod-b"]["stock_quantity"] = 2

        stock_repo.before_compare_and_set = other_writer

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.decrease([("prod-a", 3), ("prod-b", 5)], order_id=ORDER_ID, cause_id="CAP-1")

        shortages = {s.product_id: s.available for s in exc_info.value.shortages}
        assert shortages == {"prod-a": 1, "prod-b": 2}
        assert stock_repo.quantity("prod-a") == 1
        assert stock_repo.quantity("prod-b") == 2
        assert {m["state"] for m in stock_repo.movements} == {"voided"}

    @pytest.mark.asyncio
    async def test_retries_compare_and_set_after_concurrent_change(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that a concurrent writer's change is preserved."""
        interfered = []

        def other_writer(product_id: str) -> None:
            if not interfered:
                interfered.append(product_id)
                stock_repo.products[product_id]["stock_quantity"] -= 1

        stock_repo.before_compare_and_set = other_writer

        result = await ledger.decrease([("prod-a", 2)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-a") == 7
        assert result.movements[0]["quantity_before"] == 9
        assert stock_repo.cas_calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that endless contention rolls back and voids the batch."""

        def always_changing(product_id: str) -> None:
            stock_repo.products[product_id]["stock_quantity"] += 1

        stock_repo.before_compare_and_set = always_changing

        with pytest.raises(StockConflictError):
            await ledger.decrease([("prod-a", 2)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.cas_calls == CAS_MAX_ATTEMPTS
        assert all(m["state"] == "voided" for m in stock_repo.movements)

    @pytest.mark.asyncio
    async def test_failure_restores_earlier_products_and_releases_anchor(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test all-or-nothing: a failure on the second product undoes the first."""
        stock_repo.fail_compare_and_set_for = {"prod-b"}

        with pytest.raises(RuntimeError):
            await ledger.decrease([("prod-a", 3), ("prod-b", 1)], order_id=ORDER_ID, cause_id="CAP-1")

        assert stock_repo.quantity("prod-a") == 10
        assert stock_repo.quantity("prod-b") == 5
        assert {m["state"] for m in stock_repo.movements} == {"voided"}

        # The voided batch no longer holds the anchor
        stock_repo.fail_compare_and_set_for = set()
        await ledger.decrease([("prod-a", 3), ("prod-b", 1)], order_id=ORDER_ID, cause_id="CAP-1")
        assert stock_repo.quantity("prod-a") == 7

    @pytest.mark.asyncio
    async def test_rollback_failure_raises_integrity_error(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that an unvoidable batch is reported for manual reconciliation."""
        stock_repo.fail_compare_and_set_for = {"prod-b"}
        stock_repo.fail_void = True

        with pytest.raises(LedgerRollbackError) as exc_info:
            await ledger.decrease([("prod-a", 3), ("prod-b", 1)], order_id=ORDER_ID, cause_id="CAP-1")

        assert exc_info.value.batch_id
        assert stock_repo.quantity("prod-a") == 10

    @pytest.mark.asyncio
    async def test_commit_failure_raises_integrity_error(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that movements left pending after the counters moved are reported."""
        stock_repo.fail_finalize = True

        with pytest.raises(LedgerCommitError) as exc_info:
            await ledger.decrease([("prod-a", 3)], order_id=ORDER_ID, cause_id="CAP-1")

        assert exc_info.value.product_ids == ["prod-a"]
        assert stock_repo.quantity("prod-a") == 7


class TestIncrease:
    """Tests for increase."""

    @pytest.mark.asyncio
    async def test_returns_stock_once_per_cause(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test that a refund returns stock and cannot be applied twice."""
        await ledger.decrease([("prod-a", 4)], order_id=ORDER_ID, cause_id="CAP-1")
        result = await ledger.increase([("prod-a", 4)], order_id=ORDER_ID, cause_id="CAP-1")

        assert result.direction == "in"
        assert result.movements[0]["kind"] == "refund"
        assert stock_repo.quantity("prod-a") == 10

        with pytest.raises(DuplicateMovementError):
            await ledger.increase([("prod-a", 4)], order_id=ORDER_ID, cause_id="CAP-1")
        assert stock_repo.quantity("prod-a") == 10

    @pytest.mark.asyncio
    async def test_unknown_product_is_rejected(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test that increasing a deleted product fails before any counter changes."""
        with pytest.raises(UnknownProductError) as exc_info:
            await ledger.increase([("prod-a", 1), ("prod-gone", 1)], order_id=ORDER_ID, cause_id="CAP-1")

        assert exc_info.value.product_ids == ["prod-gone"]
        assert stock_repo.quantity("prod-a") == 10
        assert stock_repo.applied() == []
        assert {m["state"] for m in stock_repo.movements} == {"voided"}

    @pytest.mark.asyncio
    async def test_overflow_is_rejected(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test that the counter cannot exceed the integer column range."""
        stock_repo.add_product("prod-c", MAX_STOCK_QUANTITY)

        with pytest.raises(ValueError, match="overflow"):
            await ledger.increase([("prod-c", 1)], order_id=ORDER_ID, cause_id="CAP-1")


class TestAdjust:
    """Tests for adjust."""

    @pytest.mark.asyncio
    async def test_positive_adjustment(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test a restock is recorded as a manual movement with its reason."""
        result = await ledger.adjust("prod-a", 5, "  Supplier delivery ", "admin@example.com")

        movement = result.movements[0]
        assert stock_repo.quantity("prod-a") == 15
        assert movement["kind"] == "manual_adjust"
        assert movement["direction"] == "in"
        assert movement["reason"] == "Supplier delivery"
        assert movement["actor"] == "admin@example.com"
        assert movement["order_id"] is None
        assert movement["cause_id"].startswith("adjust-")

    @pytest.mark.asyncio
    async def test_negative_adjustment_cannot_go_below_zero(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that removing more than is in stock is rejected."""
        with pytest.raises(InsufficientStockError):
            await ledger.adjust("prod-b", -6, "Damaged", "admin@example.com")

        assert stock_repo.quantity("prod-b") == 5

    @pytest.mark.asyncio
    async def test_repeated_adjustments_are_independent(
        self, ledger: StockLedger, stock_repo: FakeStockRepository
    ) -> None:
        """Test that two identical adjustments both apply."""
        await ledger.adjust("prod-b", -1, "Damaged", "admin@example.com")
        await ledger.adjust("prod-b", -1, "Damaged", "admin@example.com")

        assert stock_repo.quantity("prod-b") == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("change,reason", [(0, "Count"), (3, ""), (3, "   ")])
    async def test_rejects_invalid_adjustments(self, ledger: StockLedger, change: int, reason: str) -> None:
        """Test that zero changes and blank reasons are rejected."""
        with pytest.raises(ValueError):
            await ledger.adjust("prod-a", change, reason, "admin@example.com")

    @pytest.mark.asyncio
    async def test_unknown_product(self, ledger: StockLedger) -> None:
        """Test that adjusting a missing product raises UnknownProductError."""
        with pytest.raises(UnknownProductError):
            await ledger.adjust("prod-gone", 1, "Restock", "admin@example.com")


class TestCheckAvailability:
    """Tests for check_availability."""

    @pytest.mark.asyncio
    async def test_reports_per_item_availability(self, ledger: StockLedger, stock_repo: FakeStockRepository) -> None:
        """Test that availability is reported without changing stock."""
        report = await ledger.check_availability([("prod-a", 10), ("prod-b", 6), ("prod-x", 1)])

        assert report.available is False
        assert [item.product_id for item in report.unavailable_items] == ["prod-b", "prod-x"]
        assert stock_repo.quantity("prod-a") == 10
        assert stock_repo.cas_calls == 0

    @pytest.mark.asyncio
    async def test_movements_are_listed_newest_first(self, ledger: StockLedger) -> None:
        """Test get_movements returns ledger rows filtered by product."""
        await ledger.decrease([("prod-a", 1)], order_id=ORDER_ID, cause_id="CAP-1")
        await ledger.adjust("prod-a", 2, "Restock", "admin@example.com")

        movements = await ledger.get_movements(product_id="prod-a")

        assert [m["kind"] for m in movements] == ["manual_adjust", "sale"]
