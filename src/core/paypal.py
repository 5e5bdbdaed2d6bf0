"""PayPal REST client for order capture and webhook verification."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Token endpoint retry configuration
TOKEN_MAX_RETRIES = 3
TOKEN_MIN_WAIT_SECONDS = 0.5
TOKEN_MAX_WAIT_SECONDS = 4

ORDER_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"

WEBHOOK_HEADER_FIELDS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
    "transmission_sig": "paypal-transmission-sig",
}


class PayPalError(Exception):
    """Error returned by (or while talking to) the PayPal API.

    `retryable` is True for timeouts, network failures, 429 and 5xx
    responses. Those are safe to retry because capture is keyed by the
    PayPal order id and confirmation is idempotent downstream.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        issue: str | None = None,
        details: Any = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.issue = issue
        self.details = details
        super().__init__(message)


@dataclass
class PayPalCapture:
    """Result of a completed PayPal capture."""

    provider_order_id: str
    capture_id: str
    status: str
    amount: Decimal
    currency: str
    custom_id: str | None


def _first_issue(body: Any) -> str | None:
    """Extract the first issue code from a PayPal error body."""
    if not isinstance(body, dict):
        return None
    details = body.get("details") or []
    if details and isinstance(details[0], dict):
        return details[0].get("issue")
    return body.get("name")


def parse_capture(order_body: dict[str, Any]) -> PayPalCapture:
    """Build a PayPalCapture from a PayPal order resource.

    Works for both the capture response and GET /v2/checkout/orders/{id}.

    Raises:
        PayPalError: If the order carries no capture.
    """
    for unit in order_body.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if not captures:
            continue
        capture = captures[0]
        amount = capture.get("amount") or {}
        return PayPalCapture(
            provider_order_id=order_body["id"],
            capture_id=capture["id"],
            status=capture.get("status", ""),
            amount=Decimal(amount.get("value", "0")),
            currency=amount.get("currency_code", ""),
            custom_id=capture.get("custom_id") or unit.get("custom_id"),
        )
    raise PayPalError(
        f"PayPal order {order_body.get('id')} has no capture",
        issue="NO_CAPTURE",
        details=order_body,
    )


class PayPalClient:
    """Thin async client over the PayPal Orders and Notifications APIs.

    The base URL is resolved once per client from PAYPAL_MODE, so the token
    request and every call that uses the token always target the same
    environment (sandbox or live).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.paypal_api_base_url
        self.timeout = httpx.Timeout(self.settings.payment_provider_timeout_seconds)
        self._transport = transport

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    @retry(
        stop=stop_after_attempt(TOKEN_MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=TOKEN_MIN_WAIT_SECONDS, max=TOKEN_MAX_WAIT_SECONDS),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request_token(self, client: httpx.AsyncClient) -> httpx.Response:
        """POST the client-credentials grant, retrying network failures."""
        return await client.post(
            "/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )

    async def get_access_token(self, client: httpx.AsyncClient) -> str:
        """Obtain an OAuth2 access token via client credentials.

        Raises:
            PayPalError: If credentials are missing or the token request fails.
        """
        if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
            raise PayPalError("PayPal is not configured. Please set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET.")

        try:
            response = await self._request_token(client)
        except httpx.TransportError as e:
            raise PayPalError(f"PayPal token request failed: {e}", retryable=True) from e

        if response.status_code != 200:
            raise PayPalError(
                "PayPal token request was rejected",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                details=self._safe_json(response),
            )
        return response.json()["access_token"]

    async def _call(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform an authenticated call with a fresh token."""
        async with self._http_client() as client:
            token = await self.get_access_token(client)
            request_headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
            if headers:
                request_headers.update(headers)
            try:
                return await client.request(method, path, json=json, headers=request_headers)
            except httpx.TimeoutException as e:
                raise PayPalError(f"PayPal {method} {path} timed out", retryable=True) from e
            except httpx.TransportError as e:
                raise PayPalError(f"PayPal {method} {path} failed: {e}", retryable=True) from e

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        body = self._safe_json(response)
        status_code = response.status_code
        raise PayPalError(
            f"PayPal {action} failed with status {status_code}",
            status_code=status_code,
            retryable=status_code == 429 or status_code >= 500,
            issue=_first_issue(body),
            details=body,
        )

    async def create_order(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create a PayPal order for a local order.

        The local order id travels as `custom_id`, which PayPal echoes back on
        the capture and on every PAYMENT.CAPTURE.* webhook.

        Args:
            order_id: Local order UUID (correlation value).
            amount: Amount to charge.
            currency: ISO currency code.
            description: Optional purchase unit description.

        Returns:
            dict: PayPal order resource.
        """
        purchase_unit: dict[str, Any] = {
            "reference_id": order_id,
            "custom_id": order_id,
            "amount": {
                "currency_code": currency.upper(),
                "value": f"{amount.quantize(Decimal('0.01'))}",
            },
        }
        if description:
            purchase_unit["description"] = description[:127]

        response = await self._call(
            "POST",
            "/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": [purchase_unit]},
            headers={"PayPal-Request-Id": f"create-{order_id}"},
        )
        self._raise_for_status(response, "order creation")
        return response.json()

    async def get_order(self, provider_order_id: str) -> dict[str, Any]:
        """Fetch a PayPal order resource."""
        response = await self._call("GET", f"/v2/checkout/orders/{provider_order_id}")
        self._raise_for_status(response, "order lookup")
        return response.json()

    async def capture_order(self, provider_order_id: str) -> PayPalCapture:
        """Capture an approved PayPal order.

        A repeated capture (double click, browser retry) answers with
        ORDER_ALREADY_CAPTURED; the existing capture is then read back so the
        caller still receives the capture id and the duplicate is resolved by
        payment deduplication instead of surfacing as an error.

        Raises:
            PayPalError: If PayPal rejects the capture or cannot be reached.
        """
        response = await self._call(
            "POST",
            f"/v2/checkout/orders/{provider_order_id}/capture",
            headers={"PayPal-Request-Id": f"capture-{provider_order_id}"},
        )

        if response.status_code == 422 and _first_issue(self._safe_json(response)) == ORDER_ALREADY_CAPTURED:
            logger.info("PayPal order %s already captured, reading existing capture", provider_order_id)
            return parse_capture(await self.get_order(provider_order_id))

        self._raise_for_status(response, "capture")
        capture = parse_capture(response.json())
        logger.info(
            "PayPal order %s captured: capture=%s status=%s amount=%s %s",
            provider_order_id,
            capture.capture_id,
            capture.status,
            capture.amount,
            capture.currency,
        )
        return capture

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict[str, Any]) -> bool:
        """Verify a webhook delivery with PayPal's verify-webhook-signature API.

        Args:
            headers: Incoming request headers (case-insensitive mapping).
            event: Parsed webhook body.

        Returns:
            bool: True only if PayPal reports SUCCESS.

        Raises:
            PayPalError: If PAYPAL_WEBHOOK_ID is missing or PayPal is unreachable.
        """
        if not self.settings.paypal_webhook_id:
            raise PayPalError("PayPal webhook ID is not configured. Please set PAYPAL_WEBHOOK_ID.")

        payload: dict[str, Any] = {
            field: headers.get(header) for field, header in WEBHOOK_HEADER_FIELDS.items()
        }
        if not all(payload.values()):
            logger.warning("PayPal webhook is missing transmission headers")
            return False

        payload["webhook_id"] = self.settings.paypal_webhook_id
        payload["webhook_event"] = event

        response = await self._call(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json=payload,
        )
        self._raise_for_status(response, "webhook verification")
        return response.json().get("verification_status") == "SUCCESS"
