"""
Pydantic schemas for API request/response models.

Money is exchanged as two-decimal strings (e.g. "55.00").
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from core.money import format_money
from core.order_service import OrderLineRequest


class OrderItemRequest(BaseModel):
    """One requested order line."""

    product_id: UUID = Field(..., description="Product identifier")
    quantity: int = Field(..., ge=1, description="Units requested")
    price: Decimal = Field(
        ..., ge=0, decimal_places=2, description="Unit price the client was shown"
    )

    def to_line(self) -> OrderLineRequest:
        return OrderLineRequest(
            product_id=self.product_id, quantity=self.quantity, price=self.price
        )


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    items: List[OrderItemRequest] = Field(..., min_length=1, description="Order lines")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [
                        {
                            "product_id": "5f0c6a5e-1f1b-4c53-9d52-9a4b1b7c2a10",
                            "quantity": 3,
                            "price": "10.00",
                        },
                        {
                            "product_id": "8a1d2c34-7b6e-4f0a-8c9d-2e3f4a5b6c7d",
                            "quantity": 1,
                            "price": "25.00",
                        },
                    ]
                }
            ]
        }
    }


class OrderItemResponse(BaseModel):
    """Response schema for an order line."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    line_number: int
    unit_price: Decimal
    quantity: int
    subtotal: Decimal

    @field_serializer("unit_price", "subtotal")
    def serialize_money(self, value: Decimal) -> str:
        return format_money(value)


class OrderResponse(BaseModel):
    """Response schema for an order with its items."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: UUID
    total_amount: Decimal
    status: str
    items: List[OrderItemResponse]
    created_at: datetime
    updated_at: datetime

    @field_serializer("total_amount")
    def serialize_total(self, value: Decimal) -> str:
        return format_money(value)


class CreatePaymentRequest(BaseModel):
    """Request schema for creating a payment attempt."""

    order_id: UUID = Field(..., description="Order to pay")
    provider: str = Field(..., min_length=1, description="Payment provider (stripe, bkash)")
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional metadata forwarded to the provider"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "provider": "stripe",
                    "metadata": {"channel": "web"},
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Response schema for a payment attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    provider: str
    transaction_id: str
    status: str
    amount: Decimal
    raw_response: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("amount")
    def serialize_amount(self, value: Decimal) -> str:
        return format_money(value)


class WebhookResponse(BaseModel):
    """Response schema for webhook endpoint."""

    received: bool = Field(..., description="Whether the event was accepted")
    outcome: str = Field(..., description="settled, duplicate, ignored or failed")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual health checks")


class ErrorResponse(BaseModel):
    """Response schema for errors."""

    success: bool = Field(default=False)
    error: str = Field(..., description="Error kind")
    message: str = Field(..., description="Error message")
