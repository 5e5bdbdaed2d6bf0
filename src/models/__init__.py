"""Database model type definitions."""

from src.models.audit import AuditLogEntry
from src.models.coupon import Coupon, CouponUsage
from src.models.order import Order, OrderItem, OrderStatus, PaymentStatus
from src.models.payment import ProcessedPayment
from src.models.stock import ProductPrice, ProductStock, StockMovement

__all__ = [
    "AuditLogEntry",
    "Coupon",
    "CouponUsage",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentStatus",
    "ProcessedPayment",
    "ProductPrice",
    "ProductStock",
    "StockMovement",
]
