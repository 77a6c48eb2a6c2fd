"""
Data-access functions for orders, products and payments.

Every function takes the caller's ``AsyncSession``; the caller owns the
transaction boundary. Nothing here commits.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    utcnow,
)


async def get_products(
    db: AsyncSession, product_ids: Iterable[uuid.UUID]
) -> Dict[uuid.UUID, Product]:
    """Fetch products by id, keyed by id. Missing ids are simply absent."""
    ids = list(set(product_ids))
    if not ids:
        return {}
    result = await db.execute(select(Product).where(Product.id.in_(ids)))
    return {product.id: product for product in result.scalars().all()}


async def lock_products(
    db: AsyncSession, product_ids: Iterable[uuid.UUID]
) -> Dict[uuid.UUID, Product]:
    """
    Re-read products with a row lock held until the transaction ends.

    Rows are locked in id order so that two settlements touching the same
    products cannot deadlock.
    """
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    stmt = (
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return {product.id: product for product in result.scalars().all()}


async def decrement_stock(db: AsyncSession, product_id: uuid.UUID, quantity: int) -> bool:
    """
    Conditionally decrement stock.

    Returns:
        bool: False when the product has fewer than ``quantity`` units
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def insert_order(
    db: AsyncSession,
    owner_id: uuid.UUID,
    total_amount: Decimal,
    lines: Sequence[Dict[str, Any]],
) -> Order:
    """Add a pending order and its items to the session and flush them."""
    order = Order(
        owner_id=owner_id,
        total_amount=total_amount,
        status=OrderStatus.PENDING.value,
    )
    order.items = [
        OrderItem(
            line_number=line_number,
            product_id=line["product_id"],
            unit_price=line["unit_price"],
            quantity=line["quantity"],
            subtotal=line["subtotal"],
        )
        for line_number, line in enumerate(lines, start=1)
    ]
    db.add(order)
    await db.flush()
    return order


async def get_order(
    db: AsyncSession, order_id: uuid.UUID, for_update: bool = False
) -> Optional[Order]:
    """Fetch an order with its items."""
    stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_orders_for_owner(db: AsyncSession, owner_id: uuid.UUID) -> List[Order]:
    """All orders of an owner, newest first."""
    stmt = select(Order).where(Order.owner_id == owner_id).order_by(Order.created_at.desc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_payments_for_order(db: AsyncSession, order_id: uuid.UUID) -> List[Payment]:
    """All payment attempts of an order, newest first."""
    stmt = (
        select(Payment)
        .where(Payment.order_id == order_id)
        .order_by(Payment.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def insert_payment(
    db: AsyncSession,
    order_id: uuid.UUID,
    provider: str,
    transaction_id: str,
    amount: Decimal,
    status: str,
    raw_response: Optional[Dict[str, Any]],
) -> Payment:
    """Add a payment row and flush, surfacing unique-key violations here."""
    payment = Payment(
        order_id=order_id,
        provider=provider,
        transaction_id=transaction_id,
        amount=amount,
        status=status,
        raw_response=raw_response,
    )
    db.add(payment)
    await db.flush()
    return payment


async def get_payment_by_transaction_id(
    db: AsyncSession, transaction_id: str, for_update: bool = False
) -> Optional[Payment]:
    """Fetch a payment by its provider transaction id."""
    stmt = (
        select(Payment)
        .where(Payment.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def claim_payment_for_settlement(
    db: AsyncSession,
    transaction_id: str,
    status: PaymentStatus,
    raw_response: Optional[Dict[str, Any]],
    error_message: Optional[str] = None,
) -> bool:
    """
    Compare-and-swap a payment into a terminal status.

    The update only matches payments that are not already ``completed``
    and takes the row's write lock, so of two concurrent settlements for
    the same transaction id exactly one sees ``True`` until the winner's
    transaction ends.

    Returns:
        bool: True when this transaction now owns the settlement
    """
    stmt = (
        update(Payment)
        .where(
            Payment.transaction_id == transaction_id,
            Payment.status != PaymentStatus.COMPLETED.value,
        )
        .values(
            status=status.value,
            raw_response=raw_response,
            error_message=error_message,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def list_stale_pending_payments(
    db: AsyncSession, created_before: datetime, limit: int
) -> List[Payment]:
    """Pending payments created before ``created_before``, oldest first."""
    stmt = (
        select(Payment)
        .where(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.created_at < created_before,
        )
        .order_by(Payment.created_at)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
