"""
Refund Workflow
===============
Four-node state machine that validates and executes a refund against the
payment gateway:

    initiate ──► validate ──► execute ──► complete
       │            │            │
       └────────────┴────────────┴──► status = failed (terminal)

Nodes are ``async (RefundState, RefundDeps) -> RefundUpdate``. They never
mutate the state they are given; RefundWorkflow folds each update in with
apply_refund_update().

  initiate  Fetches the payment intent and the refundable amount
            (received − already refunded). Commits nothing. An unknown
            payment reference fails with INITIATE_ERROR.
  validate  Eligibility (order age within the refund window, payment status
            refundable, something left to refund) and amount validity
            (0 < requested ≤ refundable; no amount means the full remainder).
            Either failure ends the workflow without touching the gateway.
  execute   Creates the refund with the attempt's idempotency key, then reads
            the refund history for display. Re-running execute with the same
            key returns the refund created the first time.
  complete  Terminal. No mutation.

Idempotency keys are ``refund_{order_id}_{first_attempt_at}``. first_attempt_at
is fixed when the logical attempt starts and reused on every retry of it, so
a retry can never mint a second key.

Amounts are integer cents throughout.
"""
import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .errors import EligibilityError, ExternalServiceError, call_with_timeout
from .payments import (
    PaymentGateway,
    PaymentIntentInfo,
    format_amount,
    format_timestamp,
    refund_status_message,
)
from .state import (
    AmountValidation,
    EligibilityResult,
    RefundError,
    RefundState,
    RefundUpdate,
    apply_refund_update,
    now_ms,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_REFUND_WINDOW_DAYS = 30


def get_refund_window_days() -> int:
    return int(os.getenv("REFUND_WINDOW_DAYS", str(DEFAULT_REFUND_WINDOW_DAYS)))


@dataclass(frozen=True)
class RefundPolicy:
    window_days: int = DEFAULT_REFUND_WINDOW_DAYS
    eligible_statuses: frozenset[str] = frozenset({"succeeded", "requires_capture"})
    min_refund_amount: int = 1

    @classmethod
    def from_env(cls) -> "RefundPolicy":
        return cls(window_days=get_refund_window_days())


@dataclass
class RefundDeps:
    gateway: PaymentGateway
    policy: RefundPolicy = field(default_factory=RefundPolicy)
    clock: Callable[[], int] = now_ms
    timeout: Optional[float] = 10.0


def build_idempotency_key(order_id: str, first_attempt_at: int) -> str:
    return f"refund_{order_id}_{first_attempt_at}"


def start_refund(
    order_id: str,
    payment_intent_id: Optional[str],
    *,
    requested_amount: Optional[int] = None,
    reason: str = "requested_by_customer",
    user_email: Optional[str] = None,
    order_date: Optional[str] = None,
    first_attempt_at: Optional[int] = None,
) -> RefundState:
    """
    Create the RefundState for one logical refund attempt.

    Pass the first_attempt_at of an earlier, unfinished attempt for the same
    order to retry it under the same idempotency key.
    """
    first_attempt_at = first_attempt_at if first_attempt_at is not None else now_ms()
    return RefundState(
        order_id=order_id,
        payment_intent_id=payment_intent_id,
        user_email=user_email,
        order_date=order_date,
        requested_amount=requested_amount,
        reason=reason,
        first_attempt_at=first_attempt_at,
        idempotency_key=build_idempotency_key(order_id, first_attempt_at),
    )


def _failed(error_type: str, message: str, violations: Optional[list[str]] = None, **extra) -> RefundUpdate:
    return RefundUpdate(
        status="failed",
        error=RefundError(type=error_type, message=message, violations=violations or []),
        **extra,
    )


# ── Policy checks ───────────────────────────────────────────────────────────

def _order_time_ms(intent: PaymentIntentInfo, order_date: Optional[str]) -> int:
    if order_date:
        return int(datetime.fromisoformat(order_date).timestamp() * 1000)
    return intent.created_at


def check_eligibility(
    intent: PaymentIntentInfo,
    policy: RefundPolicy,
    now: int,
    order_date: Optional[str] = None,
) -> EligibilityResult:
    days = math.floor((now - _order_time_ms(intent, order_date)) / DAY_MS)
    violations = []
    if days > policy.window_days:
        violations.append(
            f"Order is {days} days old (refund window is {policy.window_days} days)"
        )
    if intent.status not in policy.eligible_statuses:
        violations.append(f"Payment status '{intent.status}' is not eligible for refund")
    if intent.refundable_amount <= 0:
        violations.append("Payment has already been fully refunded")
    return EligibilityResult(eligible=not violations, violations=violations, days_since_order=days)


def validate_refund_amount(
    requested: Optional[int],
    refundable: int,
    policy: RefundPolicy,
    currency: str = "usd",
) -> AmountValidation:
    if requested is None:
        if refundable < policy.min_refund_amount:
            return AmountValidation(
                valid=False, refundable_amount=refundable, error="Nothing left to refund",
            )
        return AmountValidation(valid=True, amount=refundable, refundable_amount=refundable)
    if requested <= 0:
        return AmountValidation(
            valid=False, refundable_amount=refundable,
            error="Refund amount must be greater than zero",
        )
    if requested > refundable:
        return AmountValidation(
            valid=False, refundable_amount=refundable,
            error=(
                f"Requested {format_amount(requested, currency)} exceeds the refundable "
                f"amount of {format_amount(refundable, currency)}"
            ),
        )
    return AmountValidation(valid=True, amount=requested, refundable_amount=refundable)


def ensure_eligible(eligibility: EligibilityResult) -> None:
    if not eligibility.eligible:
        raise EligibilityError("; ".join(eligibility.violations), violations=eligibility.violations)


# ── Nodes ───────────────────────────────────────────────────────────────────

async def initiate(state: RefundState, deps: RefundDeps) -> RefundUpdate:
    if not state.payment_intent_id:
        return _failed("INITIATE_ERROR", f"No payment found for order {state.order_id}")
    try:
        intent = await call_with_timeout(
            deps.gateway.get_payment_intent(state.payment_intent_id), deps.timeout, "payment_gateway",
        )
    except ExternalServiceError as exc:
        logger.warning("[refund] initiate failed for %s: %s", state.order_id, exc)
        return _failed(exc.code, exc.user_message)
    return RefundUpdate(payment_intent=intent, current_node="validate", status="processing")


async def validate(state: RefundState, deps: RefundDeps) -> RefundUpdate:
    intent = state.payment_intent
    if intent is None:
        return _failed("INITIATE_ERROR", "Payment details were not loaded")

    eligibility = check_eligibility(intent, deps.policy, deps.clock(), state.order_date)
    amount = validate_refund_amount(
        state.requested_amount, intent.refundable_amount, deps.policy, intent.currency,
    )
    try:
        ensure_eligible(eligibility)
    except EligibilityError as exc:
        logger.info("[refund] %s ineligible: %s", state.order_id, exc)
        return _failed(
            exc.code, str(exc), exc.violations,
            eligibility=eligibility, amount_validation=amount,
        )
    if not amount.valid:
        return _failed(
            "AMOUNT_VALIDATION_ERROR", amount.error or "Invalid refund amount", [amount.error or ""],
            eligibility=eligibility, amount_validation=amount,
        )
    return RefundUpdate(eligibility=eligibility, amount_validation=amount, current_node="execute")


async def execute(state: RefundState, deps: RefundDeps) -> RefundUpdate:
    amount = state.amount_validation.amount if state.amount_validation else state.requested_amount
    try:
        refund = await call_with_timeout(
            deps.gateway.create_refund(
                payment_intent_id=state.payment_intent_id,
                amount=amount,
                reason=state.reason,
                idempotency_key=state.idempotency_key,
                metadata={"order_id": state.order_id},
            ),
            deps.timeout,
            "payment_gateway",
        )
    except ExternalServiceError as exc:
        logger.warning("[refund] execute failed for %s: %s", state.order_id, exc)
        return _failed(exc.code, exc.user_message)

    try:
        history = await call_with_timeout(
            deps.gateway.list_refunds(state.payment_intent_id), deps.timeout, "payment_gateway",
        )
    except ExternalServiceError as exc:
        # History is display-only; the refund itself already succeeded.
        logger.warning("[refund] could not load refund history for %s: %s", state.order_id, exc)
        history = [refund]

    logger.info(
        "[refund] %s refunded %s (refund=%s key=%s)",
        state.order_id, format_amount(refund.amount, refund.currency), refund.id, state.idempotency_key,
    )
    return RefundUpdate(refund=refund, refund_history=history, current_node="complete", status="completed")


async def complete(state: RefundState, deps: RefundDeps) -> RefundUpdate:
    return RefundUpdate()


async def check_status(state: RefundState, deps: RefundDeps) -> RefundUpdate:
    """Re-read a completed refund from the gateway (status may move on)."""
    if state.refund is None:
        return RefundUpdate()
    refund = await call_with_timeout(
        deps.gateway.get_refund(state.refund.id), deps.timeout, "payment_gateway",
    )
    return RefundUpdate(refund=refund.model_copy(update={"idempotency_key": state.idempotency_key}))


NODES: dict[str, Callable[[RefundState, RefundDeps], Awaitable[RefundUpdate]]] = {
    "initiate": initiate,
    "validate": validate,
    "execute": execute,
    "complete": complete,
}


# ── Orchestrator ────────────────────────────────────────────────────────────

class RefundWorkflow:
    """
    Runs initiate → validate → execute, stopping after any node that fails
    the workflow or leaves current_node where it was.
    """

    def __init__(self, deps: RefundDeps):
        self.deps = deps

    async def step(self, state: RefundState) -> RefundState:
        update = await NODES[state.current_node](state, self.deps)
        return apply_refund_update(state, update)

    async def run(self, state: RefundState) -> RefundState:
        while not state.is_terminal:
            started_at = state.current_node
            state = await self.step(state)
            if state.status == "failed" or state.current_node == started_at:
                break
        return state

    async def refresh_status(self, state: RefundState) -> RefundState:
        return apply_refund_update(state, await check_status(state, self.deps))

    @staticmethod
    def summary(state: RefundState) -> str:
        return summarize_refund(state)


def summarize_refund(state: RefundState) -> str:
    """Human-readable markdown for the final RefundState."""
    if state.status == "completed" and state.refund is not None:
        refund = state.refund
        lines = [
            "## Refund Processed Successfully",
            "",
            f"- **Order:** {state.order_id}",
            f"- **Refund ID:** {refund.id}",
            f"- **Amount:** {format_amount(refund.amount, refund.currency)}",
            f"- **Status:** {refund.status}",
            f"- **Reason:** {(refund.reason or state.reason).replace('_', ' ')}",
            f"- **Created:** {format_timestamp(refund.created_at)}",
            "",
            refund_status_message(refund.status),
        ]
        if len(state.refund_history) > 1:
            total = sum(r.amount for r in state.refund_history)
            lines += ["", f"Total refunded on this payment: {format_amount(total, refund.currency)}"]
        return "\n".join(lines)

    if state.status == "failed" and state.error is not None:
        lines = [
            "## Refund Request Failed",
            "",
            f"**Order:** {state.order_id}",
            f"**Reason:** {state.error.message}",
        ]
        if len(state.error.violations) > 1:
            lines += [""] + [f"- {v}" for v in state.error.violations]
        return "\n".join(lines)

    return f"Refund for order {state.order_id} is {state.status} (step: {state.current_node})."
