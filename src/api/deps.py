"""FastAPI dependency injection functions."""

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from src.api.middleware.auth import AuthError, AuthErrorCode, decode_jwt, extract_bearer_token
from src.schemas.auth import UserContext
from src.services.checkout_service import CheckoutService
from src.services.payment_confirmation import PaymentConfirmationService
from src.services.profile_service import ProfileService
from src.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


async def get_current_user(
    authorization: Annotated[str, Header(description="Bearer token")] = "",
) -> UserContext:
    """Extract and validate the current user from the Authorization header.

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired.
    """
    try:
        payload = decode_jwt(extract_bearer_token(authorization))
    except AuthError as e:
        detail = "Token has expired" if e.code == AuthErrorCode.TOKEN_EXPIRED else e.message
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    return payload.to_user_context()


async def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> UserContext | None:
    """Extract the current user if an Authorization header is present.

    A present but invalid token is still rejected with 401.
    """
    if not authorization:
        return None
    return await get_current_user(authorization)


async def get_admin_user(user: Annotated[UserContext, Depends(get_current_user)]) -> UserContext:
    """Require an authenticated user whose profile role is admin.

    Raises:
        HTTPException: 403 if the user is not an admin.
    """
    role = await ProfileService().get_role(user.user_id)
    if role != "admin":
        logger.warning("Non-admin user %s attempted an admin operation", user.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user.model_copy(update={"role": role})


def get_confirmation_service() -> PaymentConfirmationService:
    """Get the payment confirmation orchestrator."""
    return PaymentConfirmationService()


def get_checkout_service(
    confirmation: Annotated[PaymentConfirmationService, Depends(get_confirmation_service)],
) -> CheckoutService:
    """Get the checkout service sharing the request's orchestrator."""
    return CheckoutService(confirmation=confirmation)


def get_webhook_service(
    confirmation: Annotated[PaymentConfirmationService, Depends(get_confirmation_service)],
) -> WebhookService:
    """Get the webhook service sharing the request's orchestrator."""
    return WebhookService(confirmation=confirmation)


# Type aliases for cleaner dependency injection
CurrentUser = Annotated[UserContext, Depends(get_current_user)]
OptionalUser = Annotated[UserContext | None, Depends(get_optional_user)]
AdminUser = Annotated[UserContext, Depends(get_admin_user)]
Confirmation = Annotated[PaymentConfirmationService, Depends(get_confirmation_service)]
Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]
