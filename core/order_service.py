"""
Order aggregate builder.

Validates an order request against live product data and persists the
order with its items in one transaction:
1. Every referenced product exists and is active
2. Requested quantities (summed per product) fit current stock
3. Client prices equal current prices exactly
4. Subtotals and total are computed with fixed-point decimals

Stock is not touched here; it only changes when a payment settles.
"""
import enum
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import NotFoundError, ServiceError, ValidationError
from core.money import line_subtotal, to_money, total
from database import repositories
from database.models import Order, Product, ProductStatus
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CallerRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """Authenticated caller as supplied by the upstream auth layer."""

    user_id: uuid.UUID
    role: CallerRole = CallerRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role is CallerRole.ADMIN


@dataclass(frozen=True)
class OrderLineRequest:
    """One requested line: product, quantity and the price the client saw."""

    product_id: uuid.UUID
    quantity: int
    price: Decimal


def ensure_order_access(order: Order, caller: Optional[Caller]) -> None:
    """
    Customers may only touch their own orders; admins any.

    Raises:
        ValidationError: If the caller does not own the order
    """
    if caller is None or caller.is_admin:
        return
    if order.owner_id != caller.user_id:
        raise ValidationError(
            "You can only access your own orders",
            order_id=str(order.id),
            user_id=str(caller.user_id),
        )


def check_lines(lines: Sequence[OrderLineRequest]) -> Optional[ServiceError]:
    """Shape checks that need no database access."""
    if not lines:
        return ValidationError("Order must contain at least one item")
    for line in lines:
        if line.quantity < 1:
            return ValidationError(
                f"Quantity for product {line.product_id} must be at least 1",
                product_id=str(line.product_id),
            )
        if line.price < 0:
            return ValidationError(
                f"Price for product {line.product_id} must not be negative",
                product_id=str(line.product_id),
            )
    return None


def check_products(
    lines: Sequence[OrderLineRequest], products: Dict[uuid.UUID, Product]
) -> Optional[ServiceError]:
    """Every distinct product must exist and be active."""
    for product_id in OrderedDict.fromkeys(line.product_id for line in lines):
        product = products.get(product_id)
        if product is None:
            return NotFoundError(
                f"Product with ID {product_id} not found", product_id=str(product_id)
            )
        if product.status != ProductStatus.ACTIVE.value:
            return ValidationError(
                f'Product "{product.name}" is not available for purchase',
                product_id=str(product_id),
            )
    return None


def check_stock(
    lines: Sequence[OrderLineRequest], products: Dict[uuid.UUID, Product]
) -> Optional[ServiceError]:
    """Summed quantity per product must not exceed current stock."""
    requested: Dict[uuid.UUID, int] = OrderedDict()
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    for product_id, quantity in requested.items():
        product = products[product_id]
        if product.stock < quantity:
            return ValidationError(
                f'Insufficient stock for product "{product.name}". '
                f"Available: {product.stock}, Requested: {quantity}",
                product_id=str(product_id),
                available=product.stock,
                requested=quantity,
            )
    return None


def check_prices(
    lines: Sequence[OrderLineRequest], products: Dict[uuid.UUID, Product]
) -> Optional[ServiceError]:
    """Client prices must equal current prices (decimal equality)."""
    for line in lines:
        product = products[line.product_id]
        if Decimal(line.price) != Decimal(product.price):
            return ValidationError(
                f'Price mismatch for product "{product.name}". '
                f"Current price: {to_money(product.price)}, Provided: {line.price}",
                product_id=str(line.product_id),
            )
    return None


def build_lines(lines: Sequence[OrderLineRequest]) -> List[Dict[str, object]]:
    """Order item rows with snapshotted unit price and fixed-point subtotal."""
    return [
        {
            "product_id": line.product_id,
            "unit_price": to_money(line.price),
            "quantity": line.quantity,
            "subtotal": line_subtotal(line.price, line.quantity),
        }
        for line in lines
    ]


class OrderService:
    """Creates and reads orders."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_order(
        self, owner_id: uuid.UUID, lines: Sequence[OrderLineRequest]
    ) -> Order:
        """
        Validate the request and persist a pending order with its items.

        Args:
            owner_id: Customer placing the order
            lines: Requested lines

        Returns:
            Order: The created order, items loaded

        Raises:
            NotFoundError: A product does not exist
            ValidationError: Inactive product, insufficient stock, price
                mismatch or malformed lines
        """
        error = check_lines(lines)
        if error is not None:
            raise error

        async with self.session_factory() as db:
            async with db.begin():
                products = await repositories.get_products(
                    db, (line.product_id for line in lines)
                )
                for check in (check_products, check_stock, check_prices):
                    error = check(lines, products)
                    if error is not None:
                        logger.info(
                            "order_validation_failed",
                            owner_id=str(owner_id),
                            error=error.message,
                        )
                        raise error

                rows = build_lines(lines)
                order = await repositories.insert_order(
                    db,
                    owner_id=owner_id,
                    total_amount=total(row["subtotal"] for row in rows),
                    lines=rows,
                )

        metrics.record_order_created()
        logger.info(
            "order_created",
            order_id=str(order.id),
            owner_id=str(owner_id),
            total_amount=str(order.total_amount),
            item_count=len(rows),
        )
        return order

    async def get_order(self, order_id: uuid.UUID, caller: Optional[Caller] = None) -> Order:
        """
        Fetch an order with its items.

        Raises:
            NotFoundError: If the order does not exist
            ValidationError: If a customer asks for someone else's order
        """
        async with self.session_factory() as db:
            order = await repositories.get_order(db, order_id)
        if order is None:
            raise NotFoundError(f"Order with ID {order_id} not found", order_id=str(order_id))
        ensure_order_access(order, caller)
        return order

    async def list_orders_for_owner(self, owner_id: uuid.UUID) -> List[Order]:
        async with self.session_factory() as db:
            return await repositories.list_orders_for_owner(db, owner_id)
