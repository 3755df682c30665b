"""
support_agent — Intent-Routed Support Agent with Durable Checkpoints
=====================================================================

Package layout:

    errors.py         Error taxonomy (codes + sanitized user messages), call_with_timeout
    state.py          Pydantic state models, apply_update / apply_refund_update
    checkpointing.py  CheckpointStore contract, StoreConfig, open_checkpoint_store()
    redis_store.py    RedisCheckpointStore (redis.asyncio, per-key TTL)
    memory_store.py   MemoryCheckpointStore (local TTL + oldest-first eviction)
    classifier.py     IntentRouter (DSPy ClassifyIntent + strict output parsing)
    routing.py        Pure intent → workflow routing table
    payments.py       PaymentGateway protocol, StripeGateway, InMemoryPaymentGateway
    refund.py         Refund policy, nodes and RefundWorkflow
    retrieval.py      route_query, merge_results, HybridRetriever
    formatter.py      ResponseFormatter and ChunkStream
    tool_requests.py  Tool-call request validation and per-user isolation
    catalog.py        Sample records and in-memory search backends
    providers.py      LLM + DSPy provider detection and construction
    prompts.py        General-support prompt
    nodes.py          LangGraph node factories
    graph.py          build_graph() — assembles and compiles the StateGraph
    session.py        AgentSession — high-level chat interface

Entry points for external callers:
"""
from .checkpointing import CheckpointStore, StoreConfig, memory_store, open_checkpoint_store
from .errors import (
    AuthorizationError,
    CallTimeoutError,
    EligibilityError,
    ExternalServiceError,
    SerializationError,
    SupportAgentError,
    ValidationError,
)
from .graph import build_graph
from .session import AgentSession, ChatResult
from .state import ConversationState, apply_update, create_initial_state

__all__ = [
    "AgentSession",
    "ChatResult",
    "build_graph",
    "CheckpointStore",
    "StoreConfig",
    "memory_store",
    "open_checkpoint_store",
    "ConversationState",
    "apply_update",
    "create_initial_state",
    "SupportAgentError",
    "ValidationError",
    "AuthorizationError",
    "EligibilityError",
    "ExternalServiceError",
    "CallTimeoutError",
    "SerializationError",
]
