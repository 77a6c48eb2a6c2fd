"""
Payment provider capability set.

Every provider implements the same two capabilities:

- ``create_intent``: open a payment attempt with the provider
- ``settle``: turn an inbound notification (signed webhook) or a
  transaction id (pull verification) into a canonical status

Both return a ``ProviderResult`` and never raise; provider, network and
signature failures come back as ``ProviderResult.failed(...)``.
"""
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Union, runtime_checkable

from core.errors import ErrorKind, ProviderError
from database.models import PaymentProvider, PaymentStatus


@dataclass(frozen=True)
class WebhookInbound:
    """Raw provider push notification, verified inside the strategy."""

    raw_body: bytes
    signature: Optional[str]


@dataclass(frozen=True)
class PullInbound:
    """Explicit transaction id to verify against the provider API."""

    transaction_id: str


Inbound = Union[WebhookInbound, PullInbound]


@dataclass(frozen=True)
class ProviderResult:
    """
    Outcome of a provider call.

    On success ``status`` is the canonical one and ``transaction_id`` is set
    for every payment outcome; unrelated webhook events may carry none.
    ``event_type`` keeps the provider's own event name for webhooks.
    """

    success: bool
    transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error_kind: Optional[ErrorKind] = None
    transient: bool = False
    event_type: Optional[str] = None

    @classmethod
    def ok(
        cls,
        transaction_id: Optional[str],
        status: PaymentStatus,
        raw_payload: Dict[str, Any],
        event_type: Optional[str] = None,
        message: str = "",
    ) -> "ProviderResult":
        return cls(
            success=True,
            transaction_id=transaction_id,
            status=status,
            raw_payload=raw_payload,
            event_type=event_type,
            message=message,
        )

    @classmethod
    def failed(
        cls,
        message: str,
        error_kind: ErrorKind = ErrorKind.PROVIDER,
        transient: bool = False,
        raw_payload: Optional[Dict[str, Any]] = None,
    ) -> "ProviderResult":
        return cls(
            success=False,
            message=message,
            error_kind=error_kind,
            transient=transient,
            raw_payload=raw_payload or {},
        )

    @classmethod
    def from_error(cls, error: ProviderError) -> "ProviderResult":
        return cls.failed(error.message, error_kind=error.kind, transient=error.transient)

    @property
    def is_terminal(self) -> bool:
        return self.success and self.status is not None and self.status.is_terminal


@runtime_checkable
class PaymentStrategy(Protocol):
    """Provider-specific implementation of the payment capability set."""

    provider: PaymentProvider

    async def create_intent(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        ...

    async def settle(self, inbound: Inbound) -> ProviderResult:
        ...

    async def close(self) -> None:
        ...
