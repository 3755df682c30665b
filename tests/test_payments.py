"""
Tests for the Stripe adapter in support_agent/payments.py
=========================================================
StripeClient is replaced by a MagicMock, so no network calls are made.

Covers:
  - get_payment_intent: amounts in minor units, refunded total from refunds
  - create_refund: params, idempotency key passed as a request option
  - missing resource → InitiateError; other Stripe errors → ExternalServiceError
  - from_env requires STRIPE_API_KEY
  - AgentSession picks Stripe when a key is configured
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from support_agent.errors import ExternalServiceError, InitiateError
from support_agent.payments import InMemoryPaymentGateway, StripeGateway
from support_agent.session import AgentSession
from conftest import mock_llm


def _stripe_refund(refund_id="re_1", amount=1000, status="succeeded"):
    return SimpleNamespace(
        id=refund_id, amount=amount, currency="usd", payment_intent="pi_1", charge="ch_1",
        status=status, reason="requested_by_customer", created=1_700_000_000, metadata={},
    )


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.v1.payment_intents.retrieve_async = AsyncMock(return_value=SimpleNamespace(
        id="pi_1", amount=5000, amount_received=5000, currency="usd", status="succeeded",
        created=1_700_000_000, receipt_email="alex@example.com", metadata={"order_id": "ORD-1"},
    ))
    client.v1.refunds.list_async = AsyncMock(return_value=SimpleNamespace(data=[
        _stripe_refund("re_1", 1000), _stripe_refund("re_2", 500, status="failed"),
    ]))
    client.v1.refunds.create_async = AsyncMock(return_value=_stripe_refund("re_3", 2000))
    client.v1.refunds.retrieve_async = AsyncMock(return_value=_stripe_refund("re_1", 1000, "pending"))
    return client


@pytest.fixture
def gateway(client) -> StripeGateway:
    gateway = StripeGateway("sk_test_123", timeout=1.0)
    gateway._client = client
    return gateway


# ---------------------------------------------------------------------------
# StripeGateway
# ---------------------------------------------------------------------------

class TestStripeGateway:
    async def test_payment_intent_counts_active_refunds_only(self, gateway):
        intent = await gateway.get_payment_intent("pi_1")
        assert intent.amount_received == 5000
        assert intent.amount_refunded == 1000
        assert intent.refundable_amount == 4000
        assert intent.created_at == 1_700_000_000_000
        assert intent.metadata == {"order_id": "ORD-1"}

    async def test_create_refund_passes_idempotency_key(self, gateway, client):
        refund = await gateway.create_refund(
            payment_intent_id="pi_1", amount=2000, reason="requested_by_customer",
            idempotency_key="refund_ORD-1_123", metadata={"order_id": "ORD-1"},
        )
        client.v1.refunds.create_async.assert_awaited_once_with(
            params={
                "payment_intent": "pi_1", "reason": "requested_by_customer",
                "amount": 2000, "metadata": {"order_id": "ORD-1"},
            },
            options={"idempotency_key": "refund_ORD-1_123"},
        )
        assert refund.id == "re_3"
        assert refund.idempotency_key == "refund_ORD-1_123"

    async def test_full_refund_omits_amount(self, gateway, client):
        await gateway.create_refund(
            payment_intent_id="pi_1", amount=None, reason="duplicate", idempotency_key="k",
        )
        params = client.v1.refunds.create_async.await_args.kwargs["params"]
        assert "amount" not in params

    async def test_get_refund(self, gateway):
        refund = await gateway.get_refund("re_1")
        assert refund.status == "pending"

    async def test_missing_payment_intent(self, gateway, client):
        client.v1.payment_intents.retrieve_async.side_effect = stripe.InvalidRequestError(
            "No such payment_intent: 'pi_x'", "intent", code="resource_missing",
        )
        with pytest.raises(InitiateError):
            await gateway.get_payment_intent("pi_x")

    async def test_rejected_request(self, gateway, client):
        client.v1.refunds.create_async.side_effect = stripe.InvalidRequestError(
            "Amount exceeds refundable", "amount", code="amount_too_large",
        )
        with pytest.raises(ExternalServiceError) as excinfo:
            await gateway.create_refund(payment_intent_id="pi_1", amount=9999, reason="duplicate",
                                        idempotency_key="k")
        assert excinfo.value.service == "payment_gateway"

    async def test_connection_error(self, gateway, client):
        client.v1.refunds.list_async.side_effect = stripe.APIConnectionError("network down")
        with pytest.raises(ExternalServiceError):
            await gateway.list_refunds("pi_1")

    def test_from_env_requires_key(self, monkeypatch):
        monkeypatch.delenv("STRIPE_API_KEY", raising=False)
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        with pytest.raises(ValueError):
            StripeGateway.from_env()


# ---------------------------------------------------------------------------
# Gateway selection
# ---------------------------------------------------------------------------

class TestGatewaySelection:
    async def test_stripe_when_key_set(self, memory, router, monkeypatch):
        monkeypatch.setenv("STRIPE_API_KEY", "sk_test_123")
        session = AgentSession(store=memory, router=router, llm=mock_llm())
        await session.start()
        assert isinstance(session._gateway, StripeGateway)

    async def test_in_memory_without_key(self, memory, router):
        session = AgentSession(store=memory, router=router, llm=mock_llm())
        await session.start()
        assert isinstance(session._gateway, InMemoryPaymentGateway)
