"""
Payment Gateway
===============
Client-side boundary to the payment processor used by the refund workflow.

    PaymentGateway          Protocol the refund nodes depend on
    StripeGateway           Production adapter (stripe.StripeClient, async API)
    InMemoryPaymentGateway  Deterministic gateway for the CLI demo and tests

All amounts are integer minor units (cents). Every create_refund call carries
an idempotency key; a repeated key returns the refund created the first time
instead of creating another one, which is how Stripe itself behaves.

Errors are translated at this boundary:
    unknown payment reference   → InitiateError
    any other processor failure → ExternalServiceError
    exceeded time bound         → CallTimeoutError
"""
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

import stripe
from pydantic import BaseModel, Field

from .errors import ExternalServiceError, InitiateError, call_with_timeout

logger = logging.getLogger(__name__)

# Refund statuses that still count against the refundable balance.
ACTIVE_REFUND_STATUSES: frozenset[str] = frozenset({"pending", "requires_action", "succeeded"})

REFUND_STATUS_MESSAGES: dict[str, str] = {
    "pending": "Your refund is being processed. It typically takes 5-10 business days to appear on your statement.",
    "requires_action": "Your refund requires additional action. Our team will contact you.",
    "succeeded": "Your refund has been processed successfully. It should appear on your statement within 5-10 business days.",
    "failed": "Your refund could not be processed. Please contact support for assistance.",
    "canceled": "Your refund has been canceled.",
}

_CURRENCY_SYMBOLS = {"usd": "$", "eur": "€", "gbp": "£"}


class PaymentIntentInfo(BaseModel):
    id: str
    amount: int
    amount_received: int
    amount_refunded: int = 0
    currency: str = "usd"
    status: str
    created_at: int                                 # epoch ms
    customer_email: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def refundable_amount(self) -> int:
        return calculate_refundable_amount(self.amount_received, self.amount_refunded)


class RefundRecord(BaseModel):
    id: str
    amount: int
    currency: str = "usd"
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    status: str
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: int                                 # epoch ms
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentGateway(Protocol):
    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo: ...

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[int],
        reason: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundRecord: ...

    async def list_refunds(self, payment_intent_id: str) -> list[RefundRecord]: ...

    async def get_refund(self, refund_id: str) -> RefundRecord: ...


def calculate_refundable_amount(amount_received: int, amount_refunded: int) -> int:
    return max(0, amount_received - amount_refunded)


def sum_active_refunds(refunds: Iterable[RefundRecord]) -> int:
    return sum(r.amount for r in refunds if r.status in ACTIVE_REFUND_STATUSES)


def format_amount(amount: int, currency: str = "usd") -> str:
    """Format minor units for display: 1999, "usd" → "$19.99"."""
    major = amount / 100
    symbol = _CURRENCY_SYMBOLS.get(currency.lower())
    if symbol:
        return f"{symbol}{major:,.2f}"
    return f"{major:,.2f} {currency.upper()}"


def refund_status_message(status: str) -> str:
    return REFUND_STATUS_MESSAGES.get(status, f"Refund status: {status}")


def format_timestamp(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


# ── Stripe ──────────────────────────────────────────────────────────────────

def get_stripe_api_key() -> Optional[str]:
    return os.getenv("STRIPE_API_KEY") or os.getenv("STRIPE_SECRET_KEY")


def _refund_from_stripe(obj, idempotency_key: Optional[str] = None) -> RefundRecord:
    return RefundRecord(
        id=obj.id,
        amount=obj.amount,
        currency=obj.currency,
        payment_intent_id=getattr(obj, "payment_intent", None),
        charge_id=getattr(obj, "charge", None),
        status=obj.status,
        reason=getattr(obj, "reason", None),
        idempotency_key=idempotency_key,
        created_at=int(obj.created) * 1000,
        metadata=dict(getattr(obj, "metadata", None) or {}),
    )


class StripeGateway:
    """
    PaymentGateway backed by Stripe.

    Uses StripeClient's *_async methods so gateway calls never block the
    event loop. Every call is bounded by ``timeout`` seconds.
    """

    def __init__(self, api_key: str, timeout: float = 10.0):
        self._client = stripe.StripeClient(api_key)
        self._timeout = timeout

    @classmethod
    def from_env(cls) -> "StripeGateway":
        api_key = get_stripe_api_key()
        if not api_key:
            raise ValueError("STRIPE_API_KEY is not set")
        return cls(api_key, timeout=float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10")))

    async def _call(self, awaitable, operation: str):
        try:
            return await call_with_timeout(awaitable, self._timeout, "payment_gateway")
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                raise InitiateError(
                    f"stripe {operation}: {exc.user_message}", service="payment_gateway",
                ) from exc
            raise ExternalServiceError(
                f"stripe {operation} rejected: {exc.user_message}", service="payment_gateway",
            ) from exc
        except stripe.StripeError as exc:
            raise ExternalServiceError(
                f"stripe {operation} failed: {exc}", service="payment_gateway",
            ) from exc

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        intent = await self._call(
            self._client.v1.payment_intents.retrieve_async(payment_intent_id),
            "retrieve payment_intent",
        )
        refunds = await self.list_refunds(payment_intent_id)
        return PaymentIntentInfo(
            id=intent.id,
            amount=intent.amount,
            amount_received=intent.amount_received or 0,
            amount_refunded=sum_active_refunds(refunds),
            currency=intent.currency,
            status=intent.status,
            created_at=int(intent.created) * 1000,
            customer_email=getattr(intent, "receipt_email", None),
            metadata=dict(intent.metadata or {}),
        )

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[int],
        reason: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundRecord:
        params: dict = {"payment_intent": payment_intent_id, "reason": reason}
        if amount is not None:
            params["amount"] = amount
        if metadata:
            params["metadata"] = metadata
        refund = await self._call(
            self._client.v1.refunds.create_async(
                params=params, options={"idempotency_key": idempotency_key},
            ),
            "create refund",
        )
        logger.info("[payments] Refund %s for %s (key=%s)", refund.id, payment_intent_id, idempotency_key)
        return _refund_from_stripe(refund, idempotency_key)

    async def list_refunds(self, payment_intent_id: str) -> list[RefundRecord]:
        page = await self._call(
            self._client.v1.refunds.list_async(
                params={"payment_intent": payment_intent_id, "limit": 100},
            ),
            "list refunds",
        )
        return [_refund_from_stripe(r) for r in page.data]

    async def get_refund(self, refund_id: str) -> RefundRecord:
        refund = await self._call(
            self._client.v1.refunds.retrieve_async(refund_id), "retrieve refund",
        )
        return _refund_from_stripe(refund)


# ── In-memory ───────────────────────────────────────────────────────────────

class InMemoryPaymentGateway:
    """
    Deterministic PaymentGateway for demos and tests.

    Mirrors the processor's idempotency contract: the first create_refund for
    a key creates the refund, every later call with that key returns it.
    ``created_count`` counts refunds that were actually created.
    """

    def __init__(self, intents: Optional[Iterable[PaymentIntentInfo]] = None):
        self._intents: dict[str, PaymentIntentInfo] = {}
        self._refunds: dict[str, RefundRecord] = {}
        self._by_key: dict[str, RefundRecord] = {}
        self.created_count = 0
        for intent in intents or ():
            self.add_payment_intent(intent)

    def add_payment_intent(self, intent: PaymentIntentInfo) -> None:
        self._intents[intent.id] = intent

    def _refunds_for(self, payment_intent_id: str) -> list[RefundRecord]:
        return [r for r in self._refunds.values() if r.payment_intent_id == payment_intent_id]

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        intent = self._intents.get(payment_intent_id)
        if intent is None:
            raise InitiateError(
                f"payment intent {payment_intent_id!r} not found", service="payment_gateway",
            )
        refunded = intent.amount_refunded + sum_active_refunds(self._refunds_for(payment_intent_id))
        return intent.model_copy(update={"amount_refunded": refunded})

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Optional[int],
        reason: str,
        idempotency_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> RefundRecord:
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            return existing

        intent = await self.get_payment_intent(payment_intent_id)
        refund_amount = intent.refundable_amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > intent.refundable_amount:
            raise ExternalServiceError(
                f"refund of {refund_amount} exceeds refundable {intent.refundable_amount}",
                service="payment_gateway",
            )

        refund = RefundRecord(
            id=f"re_{uuid.uuid4().hex[:24]}",
            amount=refund_amount,
            currency=intent.currency,
            payment_intent_id=payment_intent_id,
            charge_id=f"ch_{payment_intent_id.removeprefix('pi_')}",
            status="succeeded",
            reason=reason,
            idempotency_key=idempotency_key,
            created_at=int(datetime.now(tz=timezone.utc).timestamp() * 1000),
            metadata=dict(metadata or {}),
        )
        self._refunds[refund.id] = refund
        self._by_key[idempotency_key] = refund
        self.created_count += 1
        return refund

    async def list_refunds(self, payment_intent_id: str) -> list[RefundRecord]:
        return sorted(self._refunds_for(payment_intent_id), key=lambda r: r.created_at, reverse=True)

    async def get_refund(self, refund_id: str) -> RefundRecord:
        refund = self._refunds.get(refund_id)
        if refund is None:
            raise ExternalServiceError(f"refund {refund_id!r} not found", service="payment_gateway")
        return refund

    def update_refund_status(self, refund_id: str, status: str) -> RefundRecord:
        """What the processor's refund webhook would report later (e.g. succeeded → failed)."""
        refund = self._refunds[refund_id].model_copy(update={"status": status})
        self._refunds[refund_id] = refund
        if refund.idempotency_key:
            self._by_key[refund.idempotency_key] = refund
        return refund
