"""Database package for order processing and payment settlement."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .models import (
    Base,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Product,
    ProductStatus,
)

__all__ = [
    "Base",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentProvider",
    "PaymentStatus",
    "Product",
    "ProductStatus",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
]
