"""
Routing Functions
=================
Pure functions that map a classification to the workflow that handles it.
No side effects, no I/O. Trivially unit-testable.

    refund_request, ticket_create    → refund
    order_inquiry, product_search    → retrieval
    general_support, unknown, None   → formatter

The graph uses route_after_classify() for its conditional edge; the
"formatter" route goes straight to the respond node.
"""
from typing import Literal, Optional

ROUTING_TABLE: dict[str, Literal["refund", "retrieval", "formatter"]] = {
    "refund_request": "refund",
    "ticket_create": "refund",
    "order_inquiry": "retrieval",
    "product_search": "retrieval",
    "general_support": "formatter",
}


def route_for_intent(intent: Optional[str]) -> Literal["refund", "retrieval", "formatter"]:
    return ROUTING_TABLE.get(intent or "", "formatter")


def route_after_classify(state: dict) -> Literal["refund", "retrieval", "formatter"]:
    """Called after the classify node. Reads the intent stored on the conversation."""
    conversation = state.get("conversation")
    intent = conversation.intent if conversation is not None else None
    return route_for_intent(intent.intent if intent is not None else None)
