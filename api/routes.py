"""
API routes for orders, payments, webhooks and monitoring.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.bootstrap import Services
from core.order_service import Caller
from database.models import Order, Payment

from .dependencies import get_caller, get_services
from .schemas import (
    CreateOrderRequest,
    CreatePaymentRequest,
    HealthCheckResponse,
    OrderResponse,
    PaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

order_router = APIRouter(prefix="/orders", tags=["orders"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

SIGNATURE_HEADERS = {"stripe": "Stripe-Signature"}
DEFAULT_SIGNATURE_HEADER = "X-Signature"


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Validate prices and stock and create a pending order",
)
async def create_order(
    request: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> Order:
    logger.info(
        "api_create_order_request",
        owner_id=str(caller.user_id),
        item_count=len(request.items),
    )
    return await services.orders.create_order(
        caller.user_id, [item.to_line() for item in request.items]
    )


@order_router.get(
    "",
    response_model=List[OrderResponse],
    summary="List orders",
    description="Orders of the caller; admins may ask for any owner",
)
async def list_orders(
    owner_id: Optional[UUID] = Query(default=None),
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> List[Order]:
    target = caller.user_id
    if owner_id is not None and owner_id != caller.user_id:
        if not caller.is_admin:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You can only list your own orders",
            )
        target = owner_id
    return await services.orders.list_orders_for_owner(target)


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_id: UUID,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> Order:
    return await services.orders.get_order(order_id, caller)


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
    description="Create a payment attempt for a pending order",
)
async def create_payment(
    request: CreatePaymentRequest,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> Payment:
    logger.info(
        "api_create_payment_request",
        order_id=str(request.order_id),
        provider=request.provider,
    )
    return await services.payments.create_payment(
        request.order_id, request.provider, request.metadata, caller=caller
    )


@payment_router.get(
    "/transaction/{transaction_id}",
    response_model=PaymentResponse,
    summary="Get payment by transaction id",
)
async def get_payment_by_transaction(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> Payment:
    return await services.payments.get_payment_by_transaction_id(transaction_id, caller)


@payment_router.get(
    "/order/{order_id}",
    response_model=List[PaymentResponse],
    summary="List payments of an order",
)
async def list_order_payments(
    order_id: UUID,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> List[Payment]:
    return await services.payments.list_payments_for_order(order_id, caller)


@payment_router.post(
    "/verify/{transaction_id}",
    response_model=PaymentResponse,
    summary="Verify a payment",
    description="Pull the payment status from the provider and settle it",
)
async def verify_payment(
    transaction_id: str,
    caller: Caller = Depends(get_caller),
    services: Services = Depends(get_services),
) -> Payment:
    logger.info("api_verify_payment_request", transaction_id=transaction_id)
    return await services.reconciliation.reconcile_payment(transaction_id, caller)


@payment_router.get(
    "/bkash/callback",
    response_model=PaymentResponse,
    summary="bKash checkout callback",
    description="Customer redirect after bKash checkout; the status is pulled from bKash",
)
async def bkash_callback(
    payment_id: str = Query(..., alias="paymentID"),
    callback_status: Optional[str] = Query(default=None, alias="status"),
    services: Services = Depends(get_services),
) -> Payment:
    # The query status is unauthenticated; only the pulled status counts
    logger.info(
        "api_bkash_callback",
        transaction_id=payment_id,
        callback_status=callback_status,
    )
    return await services.reconciliation.reconcile_payment(payment_id)


@webhook_router.post(
    "/{provider}",
    response_model=WebhookResponse,
    summary="Provider webhook endpoint",
    description="Verify and settle provider notifications",
)
async def provider_webhook(
    provider: str,
    request: Request,
    services: Services = Depends(get_services),
) -> Any:
    body = await request.body()
    header = SIGNATURE_HEADERS.get(provider.lower(), DEFAULT_SIGNATURE_HEADER)
    signature = request.headers.get(header)

    logger.info("api_webhook_received", provider=provider, body_size=len(body))
    result = await services.webhooks.handle_provider_webhook(provider, body, signature)

    if not result.acknowledged:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"received": False, "outcome": result.outcome},
        )
    return {"received": True, "outcome": result.outcome}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Kubernetes liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Kubernetes readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "ready":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=result,
        )
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
