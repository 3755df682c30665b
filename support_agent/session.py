"""
Agent Session
=============
High-level interface for multi-turn, multi-thread support conversations.

Responsibilities:
  - Open the checkpoint store via open_checkpoint_store() (or use the one
    injected by the caller) and hold it for the process lifetime
  - Build and hold the compiled LangGraph graph
  - Per message: load the thread's latest ConversationState (or create it),
    enforce that the thread belongs to the caller, run the graph, append the
    reply, save a new checkpoint, return the rendered reply and chunk stream

Store failures:
  An ExternalServiceError from a Redis store at runtime switches the session
  to a fresh in-memory store (logged) and the operation is retried there.
  Conversation history from before the switch is not visible afterwards.
  SerializationError is not recovered: an unreadable checkpoint is surfaced.

Usage:
    session = AgentSession()                      # store chosen from env
    session = AgentSession(store=memory_store())  # explicit store

    await session.start()
    result = await session.chat(thread_id, "user-1", "Refund ORD-1001",
                                user_email="alex@example.com")
    await session.stop()
"""
import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, Optional

from .catalog import Catalog, CatalogLexicalBackend, CatalogSemanticBackend
from .checkpointing import CheckpointStore, StoreConfig, memory_store, open_checkpoint_store
from .classifier import IntentRouter
from .errors import AuthorizationError, ExternalServiceError, ValidationError
from .formatter import RESPONSE_SHAPES, ChunkStream, ResponseFormatter
from .graph import build_graph
from .nodes import NodeDeps
from .payments import InMemoryPaymentGateway, PaymentGateway, StripeGateway, get_stripe_api_key
from .providers import build_llm, configure_dspy
from .refund import RefundDeps, RefundPolicy, RefundWorkflow
from .retrieval import HybridRetriever
from .state import (
    CheckpointRecord,
    ConversationState,
    ConversationUpdate,
    Message,
    RefundState,
    ThreadMetadata,
    ToolResult,
    apply_update,
    create_initial_state,
    estimate_tokens,
)

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    thread_id: str
    checkpoint_id: str
    content: str
    stream: ChunkStream
    intent: Optional[str]
    confidence: Optional[float]
    current_agent: str


class AgentSession:
    """
    Manages the store, graph and collaborators for all conversation threads.

    Every collaborator can be injected; anything left as None is built on
    start() from the environment (LLM provider, Redis URL, ...) or from the
    sample catalog.
    """

    def __init__(
        self,
        store_config: Optional[StoreConfig] = None,
        *,
        store: Optional[CheckpointStore] = None,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[Catalog] = None,
        router: Optional[IntentRouter] = None,
        retriever: Optional[HybridRetriever] = None,
        formatter: Optional[ResponseFormatter] = None,
        refund_policy: Optional[RefundPolicy] = None,
        llm: Any = None,
    ):
        self._store_config = store_config or StoreConfig.from_env()
        self._store = store
        self._gateway = gateway
        self._catalog = catalog or Catalog()
        self._router = router
        self._retriever = retriever
        self._formatter = formatter or ResponseFormatter()
        self._refund_policy = refund_policy or RefundPolicy.from_env()
        self._llm = llm
        self._graph = None
        self._exit_stack = AsyncExitStack()

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._store is None:
            self._store = await open_checkpoint_store(self._store_config)
            self._exit_stack.push_async_callback(self._close_store)

        if self._router is None:
            configure_dspy()
            self._router = IntentRouter()
        if self._llm is None:
            self._llm = build_llm()
        if self._gateway is None:
            if get_stripe_api_key():
                self._gateway = StripeGateway.from_env()
                logger.info("[session] Using Stripe payment gateway")
            else:
                self._gateway = InMemoryPaymentGateway(self._catalog.payment_intents())
                logger.info("[session] STRIPE_API_KEY not set, using in-memory payment gateway")
        if self._retriever is None:
            self._retriever = HybridRetriever(
                lexical=CatalogLexicalBackend(self._catalog),
                semantic=CatalogSemanticBackend(self._catalog),
            )

        self._graph = build_graph(NodeDeps(
            router=self._router,
            gateway=self._gateway,
            retriever=self._retriever,
            catalog=self._catalog,
            formatter=self._formatter,
            refund_policy=self._refund_policy,
            llm=self._llm,
        ))
        logger.info("[session] Ready (checkpoint store: %s)", self.store_backend)

    async def stop(self) -> None:
        """Close the store if this session opened it."""
        await self._exit_stack.aclose()

    async def _close_store(self) -> None:
        if self._store is not None:
            await self._store.close()

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def store_backend(self) -> str:
        return self._store.backend if self._store is not None else "none"

    # ── Store access with fallback ──────────────────────────────────────────

    async def _store_call(self, method: str, *args, **kwargs):
        try:
            return await getattr(self._store, method)(*args, **kwargs)
        except ExternalServiceError as exc:
            if self._store.backend == "memory":
                raise
            logger.warning(
                "[session] Checkpoint store %s failed during %s (%s); switching to in-memory store",
                self._store.backend, method, exc,
            )
            failed, self._store = self._store, memory_store(self._store_config)
            await failed.close()
            return await getattr(self._store, method)(*args, **kwargs)

    async def _owned_state(self, thread_id: str, user_id: Optional[str]) -> Optional[ConversationState]:
        state = await self._store_call("load", thread_id)
        if state is not None and user_id is not None and state.metadata.user_id != user_id:
            raise AuthorizationError(f"thread {thread_id} does not belong to {user_id}")
        return state

    # ── Main chat interface ─────────────────────────────────────────────────

    async def chat(
        self,
        thread_id: str,
        user_id: str,
        message: str,
        user_email: Optional[str] = None,
        response_format: str = "markdown",
    ) -> ChatResult:
        """
        Handle one user message on ``thread_id`` and checkpoint the result.

        Raises:
            ValidationError:    empty message or unknown response_format
            AuthorizationError: the thread belongs to another user, or the
                                message touches another customer's records
        """
        if self._graph is None:
            raise RuntimeError("AgentSession.start() has not been called")
        if not message or not message.strip():
            raise ValidationError("empty message", user_message="Message must not be empty.")
        if response_format not in RESPONSE_SHAPES:
            raise ValidationError(
                f"unknown response_format {response_format!r}",
                user_message=f"response_format must be one of {', '.join(RESPONSE_SHAPES)}.",
            )

        state = await self._owned_state(thread_id, user_id)
        if state is None:
            state = create_initial_state(thread_id, user_id, user_email)
            logger.info("[session] New thread %s for user %s", thread_id, user_id)

        state = apply_update(state, ConversationUpdate(
            messages=[Message(role="human", content=message)],
            total_tokens=estimate_tokens(message),
            error=None,
        ))

        result = await self._graph.ainvoke({
            "conversation": state,
            "response_format": response_format,
            "result": None,
        })
        conversation: ConversationState = result["conversation"]
        content: str = result["rendered"]

        conversation = apply_update(conversation, ConversationUpdate(
            messages=[Message(role="ai", content=content)],
            total_tokens=estimate_tokens(content),
        ))

        intent = conversation.intent
        checkpoint_id = uuid.uuid4().hex
        await self._store_call(
            "save",
            thread_id,
            checkpoint_id,
            conversation,
            {
                "intent": intent.intent if intent else None,
                "agent": conversation.current_agent,
                "message_count": len(conversation.messages),
            },
        )

        return ChatResult(
            thread_id=thread_id,
            checkpoint_id=checkpoint_id,
            content=content,
            stream=self._formatter.chunk(content),
            intent=intent.intent if intent else None,
            confidence=intent.confidence if intent else None,
            current_agent=conversation.current_agent,
        )

    # ── Thread inspection ───────────────────────────────────────────────────

    async def get_state(self, thread_id: str, user_id: Optional[str] = None) -> Optional[ConversationState]:
        return await self._owned_state(thread_id, user_id)

    async def get_history(self, thread_id: str, user_id: Optional[str] = None) -> list[dict]:
        """
        The thread's user/assistant messages as {role, content} dicts.
        Unknown threads have an empty history.
        """
        state = await self._owned_state(thread_id, user_id)
        if state is None:
            return []
        roles = {"human": "user", "ai": "assistant"}
        return [
            {"role": roles[m.role], "content": m.content, "timestamp": m.timestamp}
            for m in state.messages
            if m.role in roles
        ]

    async def list_checkpoints(
        self,
        thread_id: str,
        limit: int = 10,
        before: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[str]:
        await self._owned_state(thread_id, user_id)
        return await self._store_call("list", thread_id, limit, before)

    async def get_checkpoint(
        self, thread_id: str, checkpoint_id: str, user_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        record = await self._store_call("get_record", thread_id, checkpoint_id)
        if record is not None and user_id is not None and record.state.metadata.user_id != user_id:
            raise AuthorizationError(f"checkpoint {checkpoint_id} does not belong to {user_id}")
        return record

    async def list_threads(self, user_id: Optional[str] = None) -> list[ThreadMetadata]:
        return await self._store_call("list_threads", user_id)

    async def delete_thread(self, thread_id: str, user_id: Optional[str] = None) -> int:
        await self._owned_state(thread_id, user_id)
        deleted = await self._store_call("delete_thread", thread_id)
        logger.info("[session] Deleted thread %s (%d checkpoints)", thread_id, deleted)
        return deleted

    # ── Refund status ───────────────────────────────────────────────────────

    async def refresh_refund(self, thread_id: str, user_id: str) -> RefundState:
        """
        Re-read the thread's completed refund from the payment gateway and
        checkpoint the (possibly changed) status.

        Raises:
            ValidationError:    the thread holds no completed refund
            AuthorizationError: the thread belongs to another user
        """
        if self._graph is None:
            raise RuntimeError("AgentSession.start() has not been called")
        state = await self._owned_state(thread_id, user_id)
        refund_state = state.refund_state if state is not None else None
        if refund_state is None or refund_state.status != "completed" or refund_state.refund is None:
            raise ValidationError(
                f"thread {thread_id} has no completed refund",
                user_message="There is no completed refund on this conversation to refresh.",
            )

        workflow = RefundWorkflow(RefundDeps(gateway=self._gateway, policy=self._refund_policy))
        refreshed = await workflow.refresh_status(refund_state)
        previous_status = refund_state.refund.status
        state = apply_update(state, ConversationUpdate(
            refund_state=refreshed,
            tool_results=[ToolResult(
                tool_name="refresh_refund_status",
                status="success",
                input={"order_id": refreshed.order_id, "refund_id": refreshed.refund.id},
                output=refreshed.refund.model_dump(mode="json"),
            )],
        ))
        await self._store_call(
            "save",
            thread_id,
            uuid.uuid4().hex,
            state,
            {
                "intent": state.intent.intent if state.intent else None,
                "agent": "refund",
                "message_count": len(state.messages),
            },
        )
        logger.info(
            "[session] Refund %s for order %s: %s → %s",
            refreshed.refund.id, refreshed.order_id, previous_status, refreshed.refund.status,
        )
        return refreshed

    async def extend_thread(self, thread_id: str, additional_seconds: int) -> int:
        return await self._store_call("extend_ttl", thread_id, additional_seconds)
