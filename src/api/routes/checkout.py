"""Checkout API routes for PayPal and Stripe payments."""

import logging
from uuid import UUID

import stripe
from fastapi import APIRouter, HTTPException, status

from src.api.deps import Checkout, OptionalUser
from src.api.middleware.error_handler import (
    BadRequestError,
    ConflictError,
    InsufficientStockAPIError,
    ManualReviewRequiredError,
    NotFoundError,
    PaymentProviderError,
)
from src.core.paypal import PayPalError
from src.schemas.checkout import (
    PaymentResultResponse,
    PayPalCaptureRequest,
    PayPalOrderCreate,
    PayPalOrderResponse,
    StockCheckItemResult,
    StockCheckRequest,
    StockCheckResponse,
    StripeSessionCreate,
    StripeSessionResponse,
)
from src.schemas.order import OrderCreate, OrderResponse
from src.services.coupon_service import CouponError
from src.services.order_state import OrderNotFoundError, OrderStateError
from src.services.payment_confirmation import OrderUpdateAfterStockError, PaymentOutcome
from src.services.profile_service import ProfileService
from src.services.stock_ledger import InsufficientStockError, LedgerIntegrityError, UnknownProductError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "/paypal/orders",
    response_model=PayPalOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create PayPal order",
    description="Creates a PayPal order for a pending local order. The local order id is sent as custom_id.",
)
async def create_paypal_order(data: PayPalOrderCreate, service: Checkout) -> PayPalOrderResponse:
    """Create a PayPal order for the PayPal buttons.

    Raises:
        NotFoundError: 404 if the order does not exist.
        ConflictError: 409 if the order is not payable.
        PaymentProviderError: 502 if PayPal fails.
    """
    try:
        result = await service.create_paypal_order(str(data.order_id))
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    except OrderStateError as e:
        raise ConflictError(str(e), error_type="order_not_payable") from e
    except PayPalError as e:
        raise PaymentProviderError(e.message, retryable=e.retryable) from e

    return PayPalOrderResponse(**result)


@router.post(
    "/paypal/capture",
    response_model=PaymentResultResponse,
    summary="Capture PayPal order",
    description=(
        "Captures an approved PayPal order and applies it to the local order. "
        "Idempotent: repeated calls and concurrent webhooks apply stock changes once."
    ),
)
async def capture_paypal_order(data: PayPalCaptureRequest, service: Checkout) -> PaymentResultResponse:
    """Capture a PayPal order (synchronous confirmation channel).

    Returns:
        PaymentResultResponse: applied, already_processed or pending.

    Raises:
        InsufficientStockAPIError: 409 with one detail per short product; the
            payment is kept and the order flagged for review.
        NotFoundError: 404 if the capture references no known order.
        ManualReviewRequiredError: 500 if stock moved but the order could not
            be finalized.
        PaymentProviderError: 502 if PayPal fails (retryable).
    """
    try:
        result = await service.capture_paypal_order(data.provider_order_id)
    except PayPalError as e:
        raise PaymentProviderError(e.message, retryable=e.retryable) from e
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    except OrderStateError as e:
        raise ConflictError(str(e), error_type="order_closed") from e
    except (OrderUpdateAfterStockError, LedgerIntegrityError) as e:
        raise ManualReviewRequiredError(
            "Payment captured but the order could not be finalized. Our team has been notified."
        ) from e

    if result.outcome == PaymentOutcome.INSUFFICIENT_STOCK:
        raise InsufficientStockAPIError.from_shortages(
            result.shortages,
            "Payment received but some items are out of stock. Your order will be reviewed.",
        )

    return PaymentResultResponse.from_result(result)


@router.post(
    "/stripe/session",
    response_model=StripeSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Stripe Checkout Session",
    description="Creates a Stripe Checkout Session for a pending local order.",
)
async def create_stripe_session(data: StripeSessionCreate, service: Checkout) -> StripeSessionResponse:
    """Create a Stripe Checkout Session; the frontend redirects to checkout_url.

    Raises:
        HTTPException: 400 if Stripe is not configured.
    """
    try:
        result = await service.create_stripe_session(
            order_id=str(data.order_id),
            success_url=str(data.success_url),
            cancel_url=str(data.cancel_url),
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e
    except OrderStateError as e:
        raise ConflictError(str(e), error_type="order_not_payable") from e
    except stripe.StripeError as e:
        raise PaymentProviderError(f"Stripe error: {e.user_message or 'request failed'}") from e

    return StripeSessionResponse(**result)


@router.post(
    "/check-stock",
    response_model=StockCheckResponse,
    summary="Check stock availability",
    description="Checks whether every cart item is in stock. Nothing is reserved.",
)
async def check_stock(data: StockCheckRequest, service: Checkout) -> StockCheckResponse:
    """Check cart availability before starting a payment."""
    report = await service.check_stock((item.product_id, item.quantity) for item in data.items)
    return StockCheckResponse(
        available=report.available,
        items=[
            StockCheckItemResult(
                product_id=item.product_id,
                product_name=item.product_name,
                requested=item.requested,
                in_stock=item.in_stock,
                available=item.available,
            )
            for item in report.items
        ],
    )


# Orders router - mounted separately at /orders
orders_router = APIRouter(prefix="/orders", tags=["orders"])


@orders_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description=(
        "Creates the pending order a PayPal, Stripe or cash payment is applied to. "
        "Prices come from the catalog; stock is checked but not reserved."
    ),
)
async def create_order(data: OrderCreate, user: OptionalUser, service: Checkout) -> OrderResponse:
    """Create a provisional pending order from the cart.

    Raises:
        BadRequestError: 400 if a product is unknown or the coupon is invalid.
        InsufficientStockAPIError: 409 with one detail per short product.
    """
    try:
        order = await service.create_order(
            items=[(item.product_id, item.quantity) for item in data.items],
            customer_email=data.customer_email,
            customer_name=data.customer_name,
            payment_method=data.payment_method,
            coupon_code=data.coupon_code,
            notes=data.notes,
            user_id=str(user.user_id) if user else None,
        )
    except InsufficientStockError as e:
        raise InsufficientStockAPIError.from_shortages(e.shortages, "Some items are out of stock") from e
    except UnknownProductError as e:
        raise BadRequestError(
            str(e),
            details=[
                {"loc": ["items", product_id], "msg": "Product is not available", "type": "unknown_product"}
                for product_id in e.product_ids
            ],
        ) from e
    except CouponError as e:
        raise BadRequestError(
            str(e),
            details=[{"loc": ["coupon_code"], "msg": e.reason, "type": "invalid_coupon"}],
        ) from e

    return OrderResponse(**order)


@orders_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    description="Returns an order with its items. Orders placed by a signed-in user are only visible to that user.",
)
async def get_order(order_id: UUID, user: OptionalUser, service: Checkout) -> OrderResponse:
    """Get a single order, e.g. for the payment success page.

    Raises:
        NotFoundError: 404 if the order does not exist.
        HTTPException: 403 if the order belongs to another user.
    """
    try:
        order = await service.get_order(str(order_id))
    except OrderNotFoundError as e:
        raise NotFoundError("Order not found") from e

    owner = order.get("user_id")
    if owner and (user is None or str(user.user_id) != str(owner)):
        role = await ProfileService().get_role(user.user_id) if user else None
        if role != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized to view this order",
            )

    return OrderResponse(**order)
