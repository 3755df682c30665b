"""
Tests for support_agent/refund.py and support_agent/payments.py
===============================================================
The refund workflow runs against InMemoryPaymentGateway and a fixed clock —
no Stripe calls.

Covers:
  - idempotency keys: format, reuse of first_attempt_at on retry
  - check_eligibility: window, payment status, already fully refunded
  - validate_refund_amount: full remainder, partial, zero, over-refund
  - RefundWorkflow.run: happy path, ineligible order never reaches the
    gateway, unknown payment reference, gateway failure
  - execute twice with the same key creates exactly one refund
  - refund history fallback, refresh_status, summaries
  - payment helpers: refundable amount, formatting
"""
from unittest.mock import AsyncMock

import pytest

from support_agent.errors import EligibilityError, ExternalServiceError, InitiateError
from support_agent.payments import (
    InMemoryPaymentGateway,
    PaymentIntentInfo,
    RefundRecord,
    calculate_refundable_amount,
    format_amount,
    refund_status_message,
    sum_active_refunds,
)
from support_agent.refund import (
    DAY_MS,
    RefundDeps,
    RefundPolicy,
    RefundWorkflow,
    build_idempotency_key,
    check_eligibility,
    ensure_eligible,
    execute,
    start_refund,
    summarize_refund,
    validate,
    validate_refund_amount,
)
from support_agent.state import RefundUpdate, apply_refund_update
from conftest import FakeClock

NOW = 1_700_000_000_000


def _intent(days_old: int = 10, status: str = "succeeded", amount: int = 89_999, refunded: int = 0,
            intent_id: str = "pi_1") -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=intent_id,
        amount=amount,
        amount_received=amount,
        amount_refunded=refunded,
        status=status,
        created_at=NOW - days_old * DAY_MS,
    )


@pytest.fixture
def fixed_clock() -> FakeClock:
    return FakeClock(NOW)


def _deps(gateway, clock) -> RefundDeps:
    return RefundDeps(gateway=gateway, policy=RefundPolicy(), clock=clock, timeout=None)


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------

class TestIdempotencyKey:
    def test_format(self):
        assert build_idempotency_key("ORD-1001", 1234) == "refund_ORD-1001_1234"

    def test_start_refund_reuses_first_attempt(self):
        first = start_refund("ORD-1001", "pi_1", first_attempt_at=555)
        retry = start_refund("ORD-1001", "pi_1", first_attempt_at=first.first_attempt_at)
        assert retry.idempotency_key == first.idempotency_key == "refund_ORD-1001_555"

    def test_new_attempt_gets_a_timestamp(self):
        state = start_refund("ORD-1001", "pi_1")
        assert state.idempotency_key == f"refund_ORD-1001_{state.first_attempt_at}"
        assert state.status == "pending"
        assert state.current_node == "initiate"


# ---------------------------------------------------------------------------
# Policy checks
# ---------------------------------------------------------------------------

class TestCheckEligibility:
    def test_recent_succeeded_payment_is_eligible(self):
        result = check_eligibility(_intent(days_old=10), RefundPolicy(), NOW)
        assert result.eligible
        assert result.days_since_order == 10
        assert result.violations == []

    def test_last_day_of_window_is_eligible(self):
        assert check_eligibility(_intent(days_old=30), RefundPolicy(), NOW).eligible

    def test_outside_window(self):
        result = check_eligibility(_intent(days_old=45), RefundPolicy(), NOW)
        assert not result.eligible
        assert result.violations == ["Order is 45 days old (refund window is 30 days)"]

    def test_window_is_configurable(self):
        assert not check_eligibility(_intent(days_old=10), RefundPolicy(window_days=7), NOW).eligible

    def test_order_date_overrides_payment_creation(self):
        from datetime import datetime, timezone

        order_date = datetime.fromtimestamp((NOW - 40 * DAY_MS) / 1000, tz=timezone.utc).isoformat()
        result = check_eligibility(_intent(days_old=1), RefundPolicy(), NOW, order_date)
        assert result.days_since_order == 40
        assert not result.eligible

    def test_unrefundable_payment_status(self):
        result = check_eligibility(_intent(status="canceled"), RefundPolicy(), NOW)
        assert result.violations == ["Payment status 'canceled' is not eligible for refund"]

    def test_already_fully_refunded(self):
        result = check_eligibility(_intent(amount=1000, refunded=1000), RefundPolicy(), NOW)
        assert "Payment has already been fully refunded" in result.violations

    def test_violations_accumulate(self):
        result = check_eligibility(_intent(days_old=60, status="canceled"), RefundPolicy(), NOW)
        assert len(result.violations) == 2

    def test_ensure_eligible_raises(self):
        result = check_eligibility(_intent(days_old=45), RefundPolicy(), NOW)
        with pytest.raises(EligibilityError) as excinfo:
            ensure_eligible(result)
        assert excinfo.value.violations == result.violations
        assert excinfo.value.code == "ELIGIBILITY_ERROR"


class TestValidateRefundAmount:
    def test_no_amount_means_full_remainder(self):
        result = validate_refund_amount(None, 5000, RefundPolicy())
        assert result.valid and result.amount == 5000

    def test_partial_amount(self):
        result = validate_refund_amount(1999, 5000, RefundPolicy())
        assert result.valid and result.amount == 1999

    def test_exact_refundable_amount(self):
        assert validate_refund_amount(5000, 5000, RefundPolicy()).valid

    def test_zero_rejected(self):
        result = validate_refund_amount(0, 5000, RefundPolicy())
        assert not result.valid
        assert result.error == "Refund amount must be greater than zero"

    def test_over_refund_rejected(self):
        result = validate_refund_amount(6000, 5000, RefundPolicy())
        assert not result.valid
        assert result.error == "Requested $60.00 exceeds the refundable amount of $50.00"

    def test_nothing_left(self):
        assert not validate_refund_amount(None, 0, RefundPolicy()).valid


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class TestRefundWorkflow:
    async def test_happy_path(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent(days_old=10)])
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1001", "pi_1", first_attempt_at=NOW),
        )
        assert final.status == "completed"
        assert final.current_node == "complete"
        assert final.refund.amount == 89_999
        assert final.refund.idempotency_key == "refund_ORD-1001_" + str(NOW)
        assert [r.id for r in final.refund_history] == [final.refund.id]
        assert gateway.created_count == 1

    async def test_partial_refund_amount(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1001", "pi_1", requested_amount=1999, first_attempt_at=NOW),
        )
        assert final.refund.amount == 1999
        assert final.amount_validation.refundable_amount == 89_999

    async def test_ineligible_order_never_calls_gateway(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent(days_old=45)])
        gateway.create_refund = AsyncMock()
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1002", "pi_1", first_attempt_at=NOW),
        )
        assert final.status == "failed"
        assert final.error.type == "ELIGIBILITY_ERROR"
        assert final.error.violations == ["Order is 45 days old (refund window is 30 days)"]
        assert final.refund is None
        gateway.create_refund.assert_not_called()

    async def test_over_refund_fails_validation(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent(amount=5000)])
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1", "pi_1", requested_amount=6000, first_attempt_at=NOW),
        )
        assert final.status == "failed"
        assert final.error.type == "AMOUNT_VALIDATION_ERROR"
        assert gateway.created_count == 0

    async def test_unknown_payment_reference(self, fixed_clock):
        final = await RefundWorkflow(_deps(InMemoryPaymentGateway(), fixed_clock)).run(
            start_refund("ORD-1", "pi_missing", first_attempt_at=NOW),
        )
        assert final.status == "failed"
        assert final.error.type == "INITIATE_ERROR"
        assert final.current_node == "initiate"

    async def test_missing_payment_reference(self, fixed_clock):
        final = await RefundWorkflow(_deps(InMemoryPaymentGateway(), fixed_clock)).run(
            start_refund("ORD-1", None, first_attempt_at=NOW),
        )
        assert final.error.type == "INITIATE_ERROR"

    async def test_gateway_failure_on_execute(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        gateway.create_refund = AsyncMock(side_effect=ExternalServiceError("boom", service="payment_gateway"))
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1", "pi_1", first_attempt_at=NOW),
        )
        assert final.status == "failed"
        assert final.error.type == "EXTERNAL_SERVICE_ERROR"
        assert "boom" not in final.error.message

    async def test_history_failure_keeps_the_refund(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        gateway.list_refunds = AsyncMock(side_effect=ExternalServiceError("down", service="payment_gateway"))
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1", "pi_1", first_attempt_at=NOW),
        )
        assert final.status == "completed"
        assert final.refund_history == [final.refund]

    async def test_terminal_state_is_not_rerun(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        workflow = RefundWorkflow(_deps(gateway, fixed_clock))
        final = await workflow.run(start_refund("ORD-1", "pi_1", first_attempt_at=NOW))
        assert await workflow.run(final) == final
        assert gateway.created_count == 1


class TestExecuteIdempotency:
    async def test_execute_twice_creates_one_refund(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        deps = _deps(gateway, fixed_clock)
        state = start_refund("ORD-1001", "pi_1", first_attempt_at=NOW)
        for _ in range(2):
            state = await RefundWorkflow(deps).step(state)
        assert state.current_node == "execute"

        first = await execute(state, deps)
        second = await execute(state, deps)
        assert gateway.created_count == 1
        assert first.refund == second.refund

    async def test_retry_with_same_first_attempt_returns_same_refund(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        workflow = RefundWorkflow(_deps(gateway, fixed_clock))
        first = await workflow.run(start_refund("ORD-1", "pi_1", requested_amount=100, first_attempt_at=NOW))
        retry = await workflow.run(start_refund("ORD-1", "pi_1", requested_amount=100, first_attempt_at=NOW))
        assert retry.refund.id == first.refund.id
        assert gateway.created_count == 1

    async def test_new_attempt_creates_new_refund(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        workflow = RefundWorkflow(_deps(gateway, fixed_clock))
        await workflow.run(start_refund("ORD-1", "pi_1", requested_amount=100, first_attempt_at=NOW))
        await workflow.run(start_refund("ORD-1", "pi_1", requested_amount=100, first_attempt_at=NOW + 1))
        assert gateway.created_count == 2


class TestNodesDoNotMutate:
    async def test_validate_returns_update_only(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        state = start_refund("ORD-1", "pi_1", first_attempt_at=NOW)
        state = apply_refund_update(state, RefundUpdate(
            payment_intent=await gateway.get_payment_intent("pi_1"), current_node="validate",
        ))
        update = await validate(state, _deps(gateway, fixed_clock))
        assert update.current_node == "execute"
        assert state.eligibility is None


class TestRefreshStatus:
    async def test_refresh_reads_gateway(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent()])
        workflow = RefundWorkflow(_deps(gateway, fixed_clock))
        final = await workflow.run(start_refund("ORD-1", "pi_1", first_attempt_at=NOW))
        gateway.update_refund_status(final.refund.id, "pending")
        refreshed = await workflow.refresh_status(final)
        assert refreshed.refund.status == "pending"
        assert refreshed.status == "completed"


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

class TestSummaries:
    async def test_success_summary(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent(amount=1999)])
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1", "pi_1", first_attempt_at=NOW),
        )
        text = summarize_refund(final)
        assert text.startswith("## Refund Processed Successfully")
        assert "$19.99" in text
        assert final.refund.id in text

    async def test_failure_summary(self, fixed_clock):
        gateway = InMemoryPaymentGateway([_intent(days_old=45)])
        final = await RefundWorkflow(_deps(gateway, fixed_clock)).run(
            start_refund("ORD-1002", "pi_1", first_attempt_at=NOW),
        )
        text = RefundWorkflow.summary(final)
        assert text.startswith("## Refund Request Failed")
        assert "45 days old" in text


# ---------------------------------------------------------------------------
# Payment helpers
# ---------------------------------------------------------------------------

class TestPaymentHelpers:
    def test_refundable_amount_never_negative(self):
        assert calculate_refundable_amount(1000, 400) == 600
        assert calculate_refundable_amount(1000, 1200) == 0

    def test_only_active_refunds_count(self):
        refunds = [
            RefundRecord(id="re_1", amount=100, status="succeeded", created_at=1),
            RefundRecord(id="re_2", amount=200, status="failed", created_at=2),
            RefundRecord(id="re_3", amount=300, status="pending", created_at=3),
        ]
        assert sum_active_refunds(refunds) == 400

    @pytest.mark.parametrize("amount, currency, expected", [
        (1999, "usd", "$19.99"),
        (123456, "usd", "$1,234.56"),
        (500, "eur", "€5.00"),
        (500, "jpy", "5.00 JPY"),
    ])
    def test_format_amount(self, amount, currency, expected):
        assert format_amount(amount, currency) == expected

    def test_status_message_fallback(self):
        assert refund_status_message("weird") == "Refund status: weird"

    async def test_in_memory_gateway_rejects_over_refund(self):
        gateway = InMemoryPaymentGateway([_intent(amount=1000)])
        with pytest.raises(ExternalServiceError):
            await gateway.create_refund(
                payment_intent_id="pi_1", amount=2000, reason="requested_by_customer", idempotency_key="k",
            )

    async def test_in_memory_gateway_unknown_intent(self):
        with pytest.raises(InitiateError):
            await InMemoryPaymentGateway().get_payment_intent("pi_nope")

    async def test_refunds_reduce_refundable_amount(self):
        gateway = InMemoryPaymentGateway([_intent(amount=1000)])
        await gateway.create_refund(
            payment_intent_id="pi_1", amount=400, reason="requested_by_customer", idempotency_key="k",
        )
        intent = await gateway.get_payment_intent("pi_1")
        assert intent.refundable_amount == 600
