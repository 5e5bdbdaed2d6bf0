"""Email service using Resend for transactional order emails."""

import logging
from decimal import Decimal
from html import escape
from typing import Any

import resend

from src.core.config import get_settings
from src.models.order import Order

logger = logging.getLogger(__name__)


def _money(value: Any, currency: str) -> str:
    return f"{Decimal(str(value or 0)):.2f} {currency}"


def _items_rows(order: Order) -> str:
    currency = order.get("currency") or "EUR"
    rows = []
    for item in order.get("items") or []:
        line_total = Decimal(str(item["product_price"])) * item["quantity"]
        rows.append(
            f"""
        <tr>
            <td style="padding: 8px 0; border-bottom: 1px solid #e5e7eb;">{escape(item["product_name"])}</td>
            <td style="padding: 8px 0; border-bottom: 1px solid #e5e7eb; text-align: center;">{item["quantity"]}</td>
            <td style="padding: 8px 0; border-bottom: 1px solid #e5e7eb; text-align: right;">{_money(line_total, currency)}</td>
        </tr>"""
        )
    return "".join(rows)


class EmailService:
    """Service for sending order emails via Resend."""

    def __init__(self) -> None:
        """Initialize email service with Resend API key."""
        settings = get_settings()
        resend.api_key = settings.resend_api_key
        self.from_email = settings.email_from_address
        self.admin_email = settings.admin_email
        self.frontend_url = settings.frontend_url

    async def send_order_confirmation_email(self, order: Order) -> dict[str, Any]:
        """Send the order confirmation to the customer.

        Args:
            order: Paid order with its items.

        Returns:
            dict: Success flag and Resend email ID, or the error.
        """
        to_email = order.get("customer_email")
        if not to_email:
            logger.warning("Order %s has no customer email, confirmation not sent", order["id"])
            return {"success": False, "error": "missing customer email"}

        currency = order.get("currency") or "EUR"
        order_url = f"{self.frontend_url}/orders/{order['id']}"
        name = escape(order.get("customer_name") or "there")
        discount_row = ""
        if Decimal(str(order.get("discount_amount") or 0)) > 0:
            discount_row = f"""
            <p style="margin: 4px 0;">Discount ({escape(order.get("coupon_code") or "")}): -{_money(order["discount_amount"], currency)}</p>"""

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Order Confirmation</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: #111827; padding: 30px; border-radius: 10px 10px 0 0; text-align: center;">
        <h1 style="color: white; margin: 0; font-size: 24px;">Thank you for your order!</h1>
    </div>

    <div style="background: #f9fafb; padding: 30px; border: 1px solid #e5e7eb; border-top: none; border-radius: 0 0 10px 10px;">
        <p style="font-size: 16px;">Hi {name}, we received your payment for order <strong>#{escape(order["order_number"])}</strong>.</p>

        <table style="width: 100%; border-collapse: collapse; font-size: 14px;">
            <tr>
                <th style="text-align: left; padding-bottom: 8px;">Product</th>
                <th style="text-align: center; padding-bottom: 8px;">Qty</th>
                <th style="text-align: right; padding-bottom: 8px;">Total</th>
            </tr>{_items_rows(order)}
        </table>

        <div style="text-align: right; margin-top: 16px; font-size: 14px;">
            <p style="margin: 4px 0;">Subtotal: {_money(order.get("subtotal"), currency)}</p>{discount_row}
            <p style="margin: 4px 0; font-size: 16px;"><strong>Total: {_money(order.get("total"), currency)}</strong></p>
        </div>

        <div style="text-align: center; margin: 30px 0;">
            <a href="{order_url}" style="background: #111827; color: white; padding: 12px 28px; text-decoration: none; border-radius: 6px; font-weight: 600;">
                View Order
            </a>
        </div>
    </div>
</body>
</html>
"""

        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [to_email],
                "subject": f"Order confirmation #{order['order_number']}",
                "html": html_content,
            })

            logger.info("Order confirmation sent to %s for order %s", to_email, order["id"])
            return {"success": True, "email_id": response.get("id")}

        except Exception as e:
            logger.error("Failed to send order confirmation for order %s: %s", order["id"], str(e))
            return {"success": False, "error": str(e)}

    async def send_admin_order_notification(
        self,
        order: Order,
        requires_manual_review: bool = False,
    ) -> dict[str, Any]:
        """Notify the shop admin about a paid (or flagged) order."""
        if not self.admin_email:
            return {"success": False, "error": "admin email not configured"}

        currency = order.get("currency") or "EUR"
        headline = "Payment captured, manual review required" if requires_manual_review else "New paid order"
        review_block = ""
        if requires_manual_review:
            review_block = f"""
    <p style="background: #fef3c7; padding: 12px; border-radius: 6px;">{escape(order.get("notes") or "")}</p>"""

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{headline}</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2>{headline}: #{escape(order["order_number"])}</h2>
    <p>Customer: {escape(order.get("customer_name") or "")} &lt;{escape(order.get("customer_email") or "")}&gt;</p>
    <p>Payment: {escape(order.get("payment_provider") or order.get("payment_method") or "")} {escape(order.get("payment_id") or "")}</p>{review_block}
    <table style="width: 100%; border-collapse: collapse; font-size: 14px;">{_items_rows(order)}
    </table>
    <p><strong>Total: {_money(order.get("total"), currency)}</strong></p>
    <p><a href="{self.frontend_url}/admin/orders/{order["id"]}">Open in admin</a></p>
</body>
</html>
"""

        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [self.admin_email],
                "subject": f"{headline} #{order['order_number']}",
                "html": html_content,
            })

            logger.info("Admin notification sent for order %s", order["id"])
            return {"success": True, "email_id": response.get("id")}

        except Exception as e:
            logger.error("Failed to send admin notification for order %s: %s", order["id"], str(e))
            return {"success": False, "error": str(e)}
