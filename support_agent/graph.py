"""
Graph Construction
==================
Assembles the LangGraph StateGraph from nodes, edges, and routing functions.

Architecture:

    START
      │
      ▼
    classify ──── refund_request / ticket_create ──► refund ─────┐
      │                                                         │
      ├────────── order_inquiry / product_search ──► retrieval ─┤
      │                                                         ▼
      └────────── general_support / fallback ──────────────► respond ──► END

No LangGraph checkpointer is attached. Persistence is the session's job: it
loads the thread's latest ConversationState from the injected
CheckpointStore, invokes this graph once per message, and saves the result.
That keeps graph.py free of any knowledge about which backend is in use.
"""
from langgraph.graph import END, StateGraph

from .nodes import (
    NodeDeps,
    create_classify_node,
    create_refund_node,
    create_respond_node,
    create_retrieval_node,
)
from .routing import route_after_classify
from .state import GraphState


def build_graph(deps: NodeDeps):
    """
    Build and compile the support graph.

    Args:
        deps: Collaborators shared by the nodes (intent router, payment
              gateway, retriever, catalog, formatter, chat model).

    Returns:
        A compiled graph; call ``await graph.ainvoke({"conversation": ...,
        "response_format": ...})``.
    """
    workflow = StateGraph(GraphState)

    workflow.add_node("classify",  create_classify_node(deps))
    workflow.add_node("refund",    create_refund_node(deps))
    workflow.add_node("retrieval", create_retrieval_node(deps))
    workflow.add_node("respond",   create_respond_node(deps))

    workflow.set_entry_point("classify")

    workflow.add_conditional_edges(
        "classify",
        route_after_classify,
        {"refund": "refund", "retrieval": "retrieval", "formatter": "respond"},
    )
    workflow.add_edge("refund", "respond")
    workflow.add_edge("retrieval", "respond")
    workflow.add_edge("respond", END)

    return workflow.compile()
