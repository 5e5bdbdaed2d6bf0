"""Admin API routes for payment reconciliation and stock management."""

import logging
from datetime import datetime
from typing import Awaitable
from uuid import UUID

from fastapi import APIRouter, Query

from src.api.deps import AdminUser, Confirmation
from src.api.middleware.error_handler import (
    BadRequestError,
    ConflictError,
    InsufficientStockAPIError,
    ManualReviewRequiredError,
    NotFoundError,
)
from src.schemas.admin import (
    AuditLogListResponse,
    AuditLogResponse,
    OrderStatusUpdate,
    StockAdjustRequest,
    StockAdjustResponse,
    StockMovementListResponse,
    StockMovementResponse,
)
from src.schemas.checkout import PaymentResultResponse
from src.schemas.order import AdminOrderListResponse, AdminOrderResponse
from src.services.audit_service import MAX_LIST_LIMIT
from src.services.order_state import OrderNotFoundError, OrderStateError
from src.services.payment_confirmation import (
    ConfirmationResult,
    OrderUpdateAfterStockError,
    PaymentOutcome,
)
from src.services.stock_ledger import InsufficientStockError, LedgerIntegrityError, UnknownProductError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


async def _run_confirmation(coro: Awaitable[ConfirmationResult]) -> ConfirmationResult:
    """Await an orchestrator call and map its failures to API errors."""
    try:
        result = await coro
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    except OrderStateError as e:
        raise ConflictError(str(e), error_type="invalid_order_state") from e
    except (OrderUpdateAfterStockError, LedgerIntegrityError) as e:
        raise ManualReviewRequiredError(str(e)) from e

    if result.outcome == PaymentOutcome.INSUFFICIENT_STOCK:
        raise InsufficientStockAPIError.from_shortages(result.shortages, "Stock is still insufficient for this order")
    return result


@router.get(
    "/orders/review",
    response_model=AdminOrderListResponse,
    summary="List orders awaiting review",
    description="Orders whose payment was captured but could not be fulfilled automatically.",
)
async def list_flagged_orders(
    admin: AdminUser,
    confirmation: Confirmation,
    limit: int = Query(default=100, ge=1, le=500),
) -> AdminOrderListResponse:
    """List orders flagged for manual review."""
    orders = await confirmation.orders.list_flagged(limit)
    return AdminOrderListResponse(items=[AdminOrderResponse(**order) for order in orders])


@router.get(
    "/orders/{order_id}",
    response_model=AdminOrderResponse,
    summary="Get order with payment details",
)
async def get_order(order_id: UUID, admin: AdminUser, confirmation: Confirmation) -> AdminOrderResponse:
    """Get an order including payment references and notes."""
    try:
        order = await confirmation.orders.get_order(str(order_id))
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    return AdminOrderResponse(**order)


@router.post(
    "/orders/{order_id}/retry-stock",
    response_model=PaymentResultResponse,
    summary="Retry stock decrement for a flagged order",
    description="Re-applies a captured payment whose stock decrement failed, e.g. after restocking.",
)
async def retry_flagged_order(
    order_id: UUID,
    admin: AdminUser,
    confirmation: Confirmation,
) -> PaymentResultResponse:
    """Retry a flagged order.

    Raises:
        InsufficientStockAPIError: 409 if stock is still short.
        ConflictError: 409 if the order is not awaiting review.
    """
    result = await _run_confirmation(confirmation.retry_flagged_order(str(order_id), admin.actor))
    return PaymentResultResponse.from_result(result)


@router.post(
    "/orders/{order_id}/confirm-payment",
    response_model=PaymentResultResponse,
    summary="Confirm cash payment",
    description="Confirms payment of a cash order and decrements stock.",
)
async def confirm_cash_payment(
    order_id: UUID,
    admin: AdminUser,
    confirmation: Confirmation,
) -> PaymentResultResponse:
    """Confirm a cash order's payment."""
    result = await _run_confirmation(confirmation.confirm_cash_payment(str(order_id), admin.actor))
    return PaymentResultResponse.from_result(result)


@router.patch(
    "/orders/{order_id}/status",
    response_model=AdminOrderResponse,
    summary="Update order fulfillment status",
)
async def update_order_status(
    order_id: UUID,
    data: OrderStatusUpdate,
    admin: AdminUser,
    confirmation: Confirmation,
) -> AdminOrderResponse:
    """Move an order through fulfillment (shipped, delivered) or cancel an unpaid one."""
    try:
        await confirmation.orders.transition_status(str(order_id), data.status)
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    except OrderStateError as e:
        raise ConflictError(str(e), error_type="invalid_transition") from e

    await confirmation.audit.record(
        "order.status_changed",
        "order",
        str(order_id),
        {"status": data.status},
        admin.actor,
    )
    order = await confirmation.orders.get_order(str(order_id))
    return AdminOrderResponse(**order)


@router.post(
    "/products/{product_id}/adjust-stock",
    response_model=StockAdjustResponse,
    summary="Adjust product stock",
    description="Applies a relative stock change (+N or -N) with a mandatory reason.",
)
async def adjust_stock(
    product_id: str,
    data: StockAdjustRequest,
    admin: AdminUser,
    confirmation: Confirmation,
) -> StockAdjustResponse:
    """Manually adjust stock; the change is recorded as a ledger movement.

    Raises:
        NotFoundError: 404 if the product does not exist.
        InsufficientStockAPIError: 409 if stock would go negative.
    """
    try:
        result = await confirmation.ledger.adjust(product_id, data.quantity_change, data.reason, admin.actor)
    except UnknownProductError as e:
        raise NotFoundError("Product not found") from e
    except InsufficientStockError as e:
        raise InsufficientStockAPIError.from_shortages(e.shortages, "Stock cannot go below zero") from e
    except ValueError as e:
        raise BadRequestError(str(e)) from e

    movement = result.movements[0]
    await confirmation.audit.record(
        "stock.adjusted",
        "product",
        product_id,
        {
            "quantity_change": data.quantity_change,
            "reason": data.reason,
            "quantity_before": movement["quantity_before"],
            "quantity_after": movement["quantity_after"],
            "movement_id": movement["id"],
        },
        admin.actor,
    )
    return StockAdjustResponse(
        product_id=product_id,
        quantity_before=movement["quantity_before"],
        quantity_after=movement["quantity_after"],
        movement=StockMovementResponse(**movement),
    )


@router.get(
    "/stock-movements",
    response_model=StockMovementListResponse,
    summary="List stock movements",
)
async def list_stock_movements(
    admin: AdminUser,
    confirmation: Confirmation,
    product_id: str | None = None,
    order_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> StockMovementListResponse:
    """List ledger movements for reconciliation, newest first."""
    movements = await confirmation.ledger.get_movements(product_id=product_id, order_id=order_id, limit=limit)
    return StockMovementListResponse(items=[StockMovementResponse(**m) for m in movements])


@router.get(
    "/audit-logs",
    response_model=AuditLogListResponse,
    summary="List audit log entries",
)
async def list_audit_logs(
    admin: AdminUser,
    confirmation: Confirmation,
    action: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
) -> AuditLogListResponse:
    """List audit entries, newest first."""
    entries = await confirmation.audit.list_entries(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    return AuditLogListResponse(items=[AuditLogResponse(**entry) for entry in entries])
