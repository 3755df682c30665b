"""
Conversation State
==================
Pydantic models for everything that is checkpointed per thread, plus the
explicit update functions that are the ONLY way nodes change state.

There are no implicit reducers. Every node returns a ConversationUpdate (or a
RefundUpdate inside the refund workflow) and the session/graph folds it in
with apply_update(). The merge rule of every field is spelled out there:

    messages          APPEND
    tool_results      APPEND
    context           DEEP-MERGE   (non-null fields of the update win)
    node_visits       ADD per key
    total_tokens      ADD
    intent            REPLACE
    current_agent     REPLACE
    error             REPLACE
    refund_state      REPLACE  ┐
    retrieval_state   REPLACE  ├ at most one is ever set; setting one clears
    formatting_state  REPLACE  ┘ the other two

Updates never mutate their input; a new ConversationState is returned.
"""
import math
import time
import uuid
from typing import Any, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing_extensions import TypedDict

from .formatter import ResponseShape, WorkflowResult
from .payments import PaymentIntentInfo, RefundRecord
from .retrieval import RoutingDecision, SearchContext, SearchHit

Role = Literal["human", "ai", "system", "tool"]
Intent = Literal[
    "refund_request", "order_inquiry", "product_search", "ticket_create", "general_support",
]
Route = Literal["refund", "retrieval", "formatter"]
AgentName = Literal["router", "refund", "retrieval", "formatter"]
RefundNode = Literal["initiate", "validate", "execute", "complete"]
RefundStatus = Literal["pending", "processing", "completed", "failed"]
RefundReason = Literal["duplicate", "fraudulent", "requested_by_customer"]

INTENTS: tuple[str, ...] = get_args(Intent)
ROUTES: tuple[str, ...] = get_args(Route)


def now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return uuid.uuid4().hex


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token) for usage accounting."""
    return math.ceil(len(text) / 4) if text else 0


# ── Conversation building blocks ────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    role: Role
    content: str
    timestamp: int = Field(default_factory=now_ms)


class DateRange(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None


class QueryContext(BaseModel):
    """Entities extracted from the conversation. Everything is optional."""

    order_id: Optional[str] = None
    product_id: Optional[str] = None
    customer_email: Optional[str] = None
    ticket_id: Optional[str] = None
    refund_amount: Optional[float] = Field(default=None, gt=0)
    search_query: Optional[str] = None
    date_range: Optional[DateRange] = None


class IntentClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)
    extracted_entities: QueryContext = Field(default_factory=QueryContext)
    suggested_routing: Route


class ToolResult(BaseModel):
    id: str = Field(default_factory=_new_id)
    tool_name: str
    status: Literal["pending", "success", "error"]
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


# ── Refund workflow sub-state ───────────────────────────────────────────────

class EligibilityResult(BaseModel):
    eligible: bool
    violations: list[str] = Field(default_factory=list)
    days_since_order: Optional[int] = None


class AmountValidation(BaseModel):
    valid: bool
    amount: Optional[int] = None
    refundable_amount: int = 0
    error: Optional[str] = None


class RefundError(BaseModel):
    type: str
    message: str
    violations: list[str] = Field(default_factory=list)


class RefundState(BaseModel):
    order_id: str
    payment_intent_id: Optional[str] = None
    user_email: Optional[str] = None
    order_date: Optional[str] = None
    requested_amount: Optional[int] = None          # cents; None means full refund
    reason: RefundReason = "requested_by_customer"
    first_attempt_at: int
    idempotency_key: str
    current_node: RefundNode = "initiate"
    status: RefundStatus = "pending"
    payment_intent: Optional[PaymentIntentInfo] = None
    eligibility: Optional[EligibilityResult] = None
    amount_validation: Optional[AmountValidation] = None
    refund: Optional[RefundRecord] = None
    refund_history: list[RefundRecord] = Field(default_factory=list)
    error: Optional[RefundError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class RefundUpdate(BaseModel):
    """Partial RefundState. Only fields explicitly set are applied."""

    current_node: Optional[RefundNode] = None
    status: Optional[RefundStatus] = None
    payment_intent: Optional[PaymentIntentInfo] = None
    eligibility: Optional[EligibilityResult] = None
    amount_validation: Optional[AmountValidation] = None
    refund: Optional[RefundRecord] = None
    refund_history: Optional[list[RefundRecord]] = None
    error: Optional[RefundError] = None


# Fields that may still be refreshed after the workflow reached a terminal status.
TERMINAL_REFRESHABLE_FIELDS: frozenset[str] = frozenset({"refund", "refund_history"})


def apply_refund_update(state: RefundState, update: RefundUpdate) -> RefundState:
    """
    Replace every field explicitly set on ``update``.

    A terminal RefundState only accepts refund/refund_history refreshes;
    anything else raises ValueError.
    """
    changes = {name: getattr(update, name) for name in update.model_fields_set}
    if not changes:
        return state
    if state.is_terminal and not set(changes) <= TERMINAL_REFRESHABLE_FIELDS:
        raise ValueError(
            f"refund for order {state.order_id} is {state.status}; "
            f"cannot apply {sorted(changes)}"
        )
    return state.model_copy(update=changes)


# ── Retrieval / formatting sub-states ───────────────────────────────────────

class RetrievalState(BaseModel):
    query: str
    search_context: Optional[SearchContext] = None
    lexical_results: list[SearchHit] = Field(default_factory=list)
    semantic_results: list[SearchHit] = Field(default_factory=list)
    combined_results: list[SearchHit] = Field(default_factory=list)
    routing_decision: Optional[RoutingDecision] = None
    used_sources: list[str] = Field(default_factory=list)
    failed_sources: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0


class FormattingState(BaseModel):
    response_format: ResponseShape = "markdown"
    rendered_content: str = ""
    chunk_count: int = 0


# ── Top-level state ─────────────────────────────────────────────────────────

class AgentMetadata(BaseModel):
    thread_id: str
    user_id: str
    user_email: Optional[str] = None
    session_start: int = Field(default_factory=now_ms)
    last_updated: int = Field(default_factory=now_ms)
    node_visits: dict[str, int] = Field(default_factory=dict)
    total_tokens: int = 0


_SUB_STATES = ("refund_state", "retrieval_state", "formatting_state")


class ConversationState(BaseModel):
    messages: list[Message] = Field(default_factory=list)
    intent: Optional[IntentClassification] = None
    context: QueryContext = Field(default_factory=QueryContext)
    tool_results: list[ToolResult] = Field(default_factory=list)
    refund_state: Optional[RefundState] = None
    retrieval_state: Optional[RetrievalState] = None
    formatting_state: Optional[FormattingState] = None
    metadata: AgentMetadata
    current_agent: AgentName = "router"
    error: Optional[str] = None

    @model_validator(mode="after")
    def _single_sub_state(self) -> "ConversationState":
        active = [name for name in _SUB_STATES if getattr(self, name) is not None]
        if len(active) > 1:
            raise ValueError(f"only one workflow sub-state may be active, got {active}")
        return self


class ConversationUpdate(BaseModel):
    """
    Partial ConversationState produced by a node.

    Replace-type fields are applied only when explicitly set, so passing
    ``error=None`` clears the error while omitting ``error`` leaves it alone.
    """

    messages: list[Message] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    context: Optional[QueryContext] = None
    node_visits: dict[str, int] = Field(default_factory=dict)
    total_tokens: int = 0
    intent: Optional[IntentClassification] = None
    current_agent: Optional[AgentName] = None
    error: Optional[str] = None
    refund_state: Optional[RefundState] = None
    retrieval_state: Optional[RetrievalState] = None
    formatting_state: Optional[FormattingState] = None


def merge_context(current: QueryContext, incoming: QueryContext) -> QueryContext:
    """Deep-merge: every non-null field of ``incoming`` overwrites ``current``."""
    changes: dict[str, Any] = {}
    for name in QueryContext.model_fields:
        value = getattr(incoming, name)
        if value is None:
            continue
        if name == "date_range" and current.date_range is not None:
            value = merge_date_range(current.date_range, value)
        changes[name] = value
    return current.model_copy(update=changes) if changes else current


def merge_date_range(current: DateRange, incoming: DateRange) -> DateRange:
    return DateRange(
        start=incoming.start if incoming.start is not None else current.start,
        end=incoming.end if incoming.end is not None else current.end,
    )


def apply_update(
    state: ConversationState,
    update: ConversationUpdate,
    *,
    now: Optional[int] = None,
) -> ConversationState:
    """Fold one node's partial update into a new ConversationState."""
    explicit = update.model_fields_set
    changes: dict[str, Any] = {}

    if update.messages:
        changes["messages"] = [*state.messages, *update.messages]
    if update.tool_results:
        changes["tool_results"] = [*state.tool_results, *update.tool_results]
    if update.context is not None:
        changes["context"] = merge_context(state.context, update.context)

    for name in ("intent", "error"):
        if name in explicit:
            changes[name] = getattr(update, name)
    if update.current_agent is not None:
        changes["current_agent"] = update.current_agent

    for name in _SUB_STATES:
        if name not in explicit:
            continue
        value = getattr(update, name)
        changes[name] = value
        if value is not None:
            for other in _SUB_STATES:
                if other != name:
                    changes[other] = None

    visits = dict(state.metadata.node_visits)
    for node, count in update.node_visits.items():
        visits[node] = visits.get(node, 0) + count
    changes["metadata"] = state.metadata.model_copy(update={
        "node_visits": visits,
        "total_tokens": state.metadata.total_tokens + update.total_tokens,
        "last_updated": now if now is not None else now_ms(),
    })

    return state.model_copy(update=changes)


def create_initial_state(
    thread_id: str,
    user_id: str,
    user_email: Optional[str] = None,
    initial_message: Optional[str] = None,
) -> ConversationState:
    started = now_ms()
    messages = []
    if initial_message:
        messages.append(Message(role="human", content=initial_message, timestamp=started))
    return ConversationState(
        messages=messages,
        context=QueryContext(customer_email=user_email),
        metadata=AgentMetadata(
            thread_id=thread_id,
            user_id=user_id,
            user_email=user_email,
            session_start=started,
            last_updated=started,
            total_tokens=estimate_tokens(initial_message or ""),
        ),
    )


# ── Persistence records ─────────────────────────────────────────────────────

class CheckpointRecord(BaseModel):
    thread_id: str
    checkpoint_id: str
    state: ConversationState
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: int
    expires_at: Optional[int] = None


class ThreadMetadata(BaseModel):
    thread_id: str
    user_id: str
    message_count: int = 0
    checkpoint_count: int = 0
    last_checkpoint_id: Optional[str] = None
    created_at: int
    last_accessed: int


# ── Graph state ─────────────────────────────────────────────────────────────

class GraphState(TypedDict, total=False):
    """
    What flows between LangGraph nodes for one request.

    No reducers: every node returns whole new values (the conversation comes
    out of apply_update), so LangGraph's default last-value channels suffice.
    """
    conversation: ConversationState
    response_format: ResponseShape
    result: Optional[WorkflowResult]
    rendered: str
