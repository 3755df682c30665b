"""
Graph Nodes
===========
Each function here builds one node of the LangGraph StateGraph.

Node responsibilities:
  classify   runs first; stores the IntentClassification and merges the
             extracted entities into the conversation context
  refund     refund_request → RefundWorkflow; ticket_create → ticket draft
  retrieval  order_inquiry / product_search → HybridRetriever
  respond    runs last; renders the workflow result (or asks the chat model
             for a general-support reply) in the requested shape

Design principle: nodes are state transformers.
They read GraphState, build a ConversationUpdate, fold it in with
apply_update() and return the new conversation plus the WorkflowResult for
the respond node. Routing is handled by routing.route_after_classify().

Collaborators (gateway, retriever, LLM, ...) arrive through NodeDeps; nodes
never reach for module-level clients.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from .catalog import Catalog
from .classifier import IntentRouter
from .formatter import ResponseFormatter, TableData, WorkflowResult
from .payments import PaymentGateway
from .prompts import FALLBACK_REPLY, SUPPORT_PROMPT
from .refund import RefundDeps, RefundPolicy, RefundWorkflow, start_refund, summarize_refund
from .retrieval import HybridRetriever, SearchOptions
from .state import (
    ConversationState,
    ConversationUpdate,
    FormattingState,
    GraphState,
    Message,
    QueryContext,
    RetrievalState,
    ToolResult,
    apply_update,
)
from .tool_requests import ensure_owner

logger = logging.getLogger(__name__)

REPLY_HISTORY_WINDOW = 10

_RECOMMENDATION = re.compile(r"\b(recommend|suggest|similar|alternative)", re.IGNORECASE)


@dataclass
class NodeDeps:
    router: IntentRouter
    gateway: PaymentGateway
    retriever: HybridRetriever
    catalog: Catalog
    formatter: ResponseFormatter = field(default_factory=ResponseFormatter)
    refund_policy: RefundPolicy = field(default_factory=RefundPolicy)
    llm: Any = None
    search_options: SearchOptions = field(default_factory=SearchOptions)


def _last_human(conversation: ConversationState) -> Optional[Message]:
    return next((m for m in reversed(conversation.messages) if m.role == "human"), None)


def _turn_entities(conversation: ConversationState) -> QueryContext:
    """Entities extracted from the current message (the merged context keeps earlier turns)."""
    if conversation.intent is None:
        return QueryContext()
    return conversation.intent.extracted_entities


# ── classify ────────────────────────────────────────────────────────────────

def create_classify_node(deps: NodeDeps):
    async def classify_node(state: GraphState) -> dict:
        conversation = state["conversation"]
        last = _last_human(conversation)
        if last is None:
            return {"conversation": conversation}

        history = [m for m in conversation.messages if m.id != last.id]
        classification = await deps.router.classify(last.content, history, conversation.context)
        update = ConversationUpdate(
            intent=classification,
            context=classification.extracted_entities,
            current_agent="router",
            node_visits={"classify": 1},
        )
        return {"conversation": apply_update(conversation, update)}

    return classify_node


# ── refund ──────────────────────────────────────────────────────────────────

def previous_attempt_started_at(conversation: ConversationState, order_id: str) -> Optional[int]:
    """
    first_attempt_at of the latest refund attempt for ``order_id`` if that
    attempt did not succeed, so a retry reuses its idempotency key.
    """
    for result in reversed(conversation.tool_results):
        if result.tool_name != "process_refund" or result.input.get("order_id") != order_id:
            continue
        if result.status == "success":
            return None
        return result.input.get("first_attempt_at")
    return None


def _ticket_draft(deps: NodeDeps, conversation: ConversationState, last: Message) -> dict:
    email = conversation.metadata.user_email
    order_id = conversation.context.order_id
    if order_id:
        order = deps.catalog.get_order(order_id)
        if order is not None:
            ensure_owner(email, order["email"])
    if not email:
        summary = "Please sign in with your email address so I can open a ticket for you."
        update = ConversationUpdate(current_agent="refund", node_visits={"refund": 1})
        return {
            "conversation": apply_update(conversation, update),
            "result": WorkflowResult(kind="ticket", summary=summary),
        }

    ticket = deps.catalog.create_ticket(email, last.content, order_id)
    logger.info("[nodes] Created ticket %s for order %s", ticket["ticket_id"], order_id)
    summary = "\n".join([
        "## Support Ticket Created",
        "",
        f"- **Ticket ID:** {ticket['ticket_id']}",
        f"- **Status:** {ticket['status']}",
        *([f"- **Order:** {order_id}"] if order_id else []),
        "",
        "Our support team will get back to you by email.",
    ])
    update = ConversationUpdate(
        tool_results=[ToolResult(
            tool_name="create_ticket",
            status="success",
            input={"order_id": order_id, "subject": ticket["subject"]},
            output=ticket,
        )],
        context=conversation.context.model_copy(update={"ticket_id": ticket["ticket_id"]}),
        current_agent="refund",
        node_visits={"refund": 1},
    )
    return {
        "conversation": apply_update(conversation, update),
        "result": WorkflowResult(kind="ticket", summary=summary, data=ticket),
    }


def create_refund_node(deps: NodeDeps):
    workflow = RefundWorkflow(RefundDeps(gateway=deps.gateway, policy=deps.refund_policy))

    async def refund_node(state: GraphState) -> dict:
        conversation = state["conversation"]
        last = _last_human(conversation)
        if conversation.intent is not None and conversation.intent.intent == "ticket_create" and last:
            return _ticket_draft(deps, conversation, last)

        entities = _turn_entities(conversation)
        order_id = entities.order_id or conversation.context.order_id
        order = deps.catalog.get_order(order_id) if order_id else None
        if order is None:
            summary = (
                f"I couldn't find order {order_id}. Please double-check the order id."
                if order_id else
                "Which order would you like a refund for? Please include the order id (e.g. ORD-1001)."
            )
            update = ConversationUpdate(current_agent="refund", node_visits={"refund": 1})
            return {
                "conversation": apply_update(conversation, update),
                "result": WorkflowResult(kind="refund", summary=summary),
            }

        ensure_owner(conversation.metadata.user_email, order["email"])

        amount = entities.refund_amount
        refund_state = start_refund(
            order["order_id"],
            order.get("payment_intent_id"),
            requested_amount=round(amount * 100) if amount is not None else None,
            user_email=conversation.metadata.user_email,
            order_date=order.get("order_date"),
            first_attempt_at=previous_attempt_started_at(conversation, order["order_id"]),
        )
        final = await workflow.run(refund_state)

        tool_result = ToolResult(
            tool_name="process_refund",
            status="success" if final.status == "completed" else "error",
            input={
                "order_id": final.order_id,
                "amount": final.requested_amount,
                "idempotency_key": final.idempotency_key,
                "first_attempt_at": final.first_attempt_at,
            },
            output=final.refund.model_dump(mode="json") if final.refund else None,
            error=final.error.message if final.error else None,
        )
        update = ConversationUpdate(
            refund_state=final,
            tool_results=[tool_result],
            current_agent="refund",
            node_visits={"refund": 1},
        )
        data = {
            "order_id": final.order_id,
            "status": final.status,
            "refund": final.refund.model_dump(mode="json") if final.refund else None,
            "error": final.error.model_dump() if final.error else None,
        }
        table = None
        if final.refund_history:
            table = TableData(
                title=f"Refunds for order {final.order_id}",
                columns=["refund_id", "amount", "status"],
                rows=[[r.id, r.amount / 100, r.status] for r in final.refund_history],
            )
        return {
            "conversation": apply_update(conversation, update),
            "result": WorkflowResult(
                kind="refund", summary=summarize_refund(final), data=data, table=table,
            ),
        }

    return refund_node


# ── retrieval ───────────────────────────────────────────────────────────────

def search_context_for(intent: Optional[str], query: str) -> str:
    if intent == "order_inquiry":
        return "order_inquiry"
    if _RECOMMENDATION.search(query):
        return "recommendation"
    return "product_search"


def _render_hits(query: str, hits) -> str:
    if not hits:
        return f"I couldn't find anything matching \"{query}\"."
    lines = [f"## Results for \"{query}\"", ""]
    for hit in hits:
        lines.append(f"- **{hit.title or hit.id}** ({hit.kind} {hit.id})")
    return "\n".join(lines)


def create_retrieval_node(deps: NodeDeps):
    async def retrieval_node(state: GraphState) -> dict:
        conversation = state["conversation"]
        last = _last_human(conversation)
        entities = _turn_entities(conversation)
        intent = conversation.intent.intent if conversation.intent else None
        query = entities.search_query or (last.content if last else "")
        if intent == "order_inquiry":
            query = entities.order_id or query
        search_context = search_context_for(intent, query)

        options = deps.search_options.model_copy(
            update={"owner_email": conversation.metadata.user_email},
        )
        response = await deps.retriever.search(query, search_context, options)

        retrieval_state = RetrievalState(
            query=query,
            search_context=search_context,
            lexical_results=response.lexical_results,
            semantic_results=response.semantic_results,
            combined_results=response.results,
            routing_decision=response.routing_decision,
            used_sources=list(response.used_sources),
            failed_sources=list(response.failed_sources),
            execution_time_ms=response.search_time_ms,
        )
        all_failed = bool(response.failed_sources) and not response.used_sources
        tool_result = ToolResult(
            tool_name="hybrid_search",
            status="error" if all_failed else "success",
            input={"query": query, "context": search_context},
            output={
                "routing_decision": response.routing_decision.label,
                "results": [{"id": h.id, "kind": h.kind, "score": h.score} for h in response.results],
            },
            error=f"failed sources: {', '.join(response.failed_sources)}" if response.failed_sources else None,
        )

        if all_failed:
            summary = "Search is temporarily unavailable. Please try again in a moment."
        else:
            summary = _render_hits(query, response.results)
        result = WorkflowResult(
            kind="retrieval",
            summary=summary,
            data=[h.model_dump(mode="json", exclude={"content"}) for h in response.results],
            table=TableData(
                title=f"Results for {query}",
                columns=["id", "kind", "title", "score"],
                rows=[[h.id, h.kind, h.title, round(h.score, 4)] for h in response.results],
            ),
        )
        update = ConversationUpdate(
            retrieval_state=retrieval_state,
            tool_results=[tool_result],
            current_agent="retrieval",
            node_visits={"retrieval": 1},
        )
        return {"conversation": apply_update(conversation, update), "result": result}

    return retrieval_node


# ── respond ─────────────────────────────────────────────────────────────────

def to_langchain_messages(messages: list[Message]) -> list:
    converted = []
    for message in messages:
        if message.role == "human":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "ai":
            converted.append(AIMessage(content=message.content))
    return converted


async def generate_reply(llm, conversation: ConversationState) -> tuple[str, int, Optional[str]]:
    """Returns (reply, tokens_used, error). Never raises for LLM failures."""
    if llm is None:
        return FALLBACK_REPLY, 0, "no chat model configured"
    recent = conversation.messages[-REPLY_HISTORY_WINDOW:]
    prompt = [SystemMessage(content=SUPPORT_PROMPT)] + to_langchain_messages(recent)
    try:
        response = await llm.ainvoke(prompt)
    except Exception as exc:
        logger.exception("[nodes] Chat model call failed: %s", exc)
        return FALLBACK_REPLY, 0, "generator_unavailable"
    usage = getattr(response, "usage_metadata", None) or {}
    return str(response.content), int(usage.get("total_tokens", 0)), None


def create_respond_node(deps: NodeDeps):
    async def respond_node(state: GraphState) -> dict:
        conversation = state["conversation"]
        shape = state.get("response_format") or "markdown"
        result = state.get("result")
        arrived_from = conversation.current_agent

        tokens = 0
        error = None
        if result is None:
            reply, tokens, error = await generate_reply(deps.llm, conversation)
            result = WorkflowResult(kind="message", summary=reply)

        formatted = deps.formatter.format(result, shape)
        update = ConversationUpdate(
            current_agent="formatter",
            node_visits={"respond": 1},
            total_tokens=tokens,
        )
        if error is not None:
            update.error = error
        if arrived_from == "retrieval":
            # Only the combined results outlive the request (in tool_results).
            update.retrieval_state = None
        elif arrived_from != "refund":
            update.formatting_state = FormattingState(
                response_format=shape,
                rendered_content=formatted.rendered_content,
                chunk_count=len(formatted.chunks.chunks()),
            )
        return {
            "conversation": apply_update(conversation, update),
            "result": result,
            "rendered": formatted.rendered_content,
        }

    return respond_node
