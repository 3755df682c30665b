"""
Tests for support_agent/session.py
==================================
AgentSession with an injected in-memory store, a scripted IntentRouter, the
sample catalog, the in-memory payment gateway and a mocked chat model.

Covers:
  - chat(): one checkpoint per message, history, chunk stream, validation
  - thread ownership: another user_id → AuthorizationError
  - checkpoint listing / lookup, thread listing, delete_thread
  - entities (refund amount, search query) come from the current message
  - refresh_refund: re-reads the refund status and checkpoints it
  - refund retried after a lost gateway response: same idempotency key,
    exactly one refund created
  - a failing Redis store at runtime switches the session to memory
  - lifecycle: chat() before start(), start() picking the store from env
"""
import pytest

from support_agent.errors import AuthorizationError, ExternalServiceError, ValidationError
from support_agent.memory_store import MemoryCheckpointStore
from support_agent.payments import InMemoryPaymentGateway
from support_agent.session import AgentSession
from conftest import ScriptedRouter, mock_llm

USER = "CUST-42"
EMAIL = "alex@example.com"


class LostResponseGateway(InMemoryPaymentGateway):
    """Creates the first refund but reports a failure, like a dropped response."""

    def __init__(self, intents):
        super().__init__(intents)
        self.calls = []

    async def create_refund(self, **kwargs):
        refund = await super().create_refund(**kwargs)
        self.calls.append(kwargs["idempotency_key"])
        if len(self.calls) == 1:
            raise ExternalServiceError("connection reset", service="payment_gateway")
        return refund


class BrokenRedisStore(MemoryCheckpointStore):
    backend = "redis"

    def __init__(self):
        super().__init__()
        self.closed = False

    async def get_record(self, thread_id, checkpoint_id=None):
        raise ExternalServiceError("redis unreachable", service="redis")

    async def close(self):
        self.closed = True


@pytest.fixture
async def session(memory, catalog, gateway, router):
    session = AgentSession(store=memory, router=router, llm=mock_llm(), gateway=gateway, catalog=catalog)
    await session.start()
    yield session
    await session.stop()


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

class TestChat:
    async def test_general_reply_is_checkpointed(self, session, memory):
        result = await session.chat("t1", USER, "hello", user_email=EMAIL)
        assert result.content == "Happy to help with that!"
        assert result.intent == "general_support"
        assert result.current_agent == "formatter"
        assert await memory.list("t1") == [result.checkpoint_id]

        record = await memory.get_record("t1", result.checkpoint_id)
        assert record.metadata == {"intent": "general_support", "agent": "formatter", "message_count": 2}

    async def test_stream_rebuilds_content(self, session):
        result = await session.chat("t1", USER, "hello", user_email=EMAIL)
        events = result.stream.events()
        assert events[-1] == {"type": "complete"}
        assert "".join(e["content"] for e in events[:-1]) == result.content

    async def test_history_across_messages(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        await session.chat("t1", USER, "are you there?", user_email=EMAIL)
        history = await session.get_history("t1", USER)
        assert [(m["role"], m["content"]) for m in history] == [
            ("user", "hello"),
            ("assistant", "Happy to help with that!"),
            ("user", "are you there?"),
            ("assistant", "Happy to help with that!"),
        ]

    async def test_unknown_thread_has_empty_history(self, session):
        assert await session.get_history("nope", USER) == []

    async def test_refund_in_json(self, session, router):
        router.script = {"intent": "refund_request", "confidence": 0.95, "entities": {"orderId": "ORD-1001"}}
        result = await session.chat("t1", USER, "refund ORD-1001", user_email=EMAIL, response_format="json")
        assert result.intent == "refund_request"
        assert '"status": "completed"' in result.content
        state = await session.get_state("t1", USER)
        assert state.refund_state.status == "completed"

    @pytest.mark.parametrize("message", ["", "   "])
    async def test_empty_message_rejected(self, session, message):
        with pytest.raises(ValidationError):
            await session.chat("t1", USER, message)

    async def test_unknown_format_rejected(self, session):
        with pytest.raises(ValidationError) as excinfo:
            await session.chat("t1", USER, "hi", response_format="xml")
        assert "markdown" in excinfo.value.user_message

    async def test_error_cleared_on_next_message(self, session):
        session._llm.ainvoke.side_effect = RuntimeError("down")
        await session.chat("t1", USER, "hi", user_email=EMAIL)
        assert (await session.get_state("t1")).error == "generator_unavailable"

        session._llm.ainvoke.side_effect = None
        await session.chat("t1", USER, "hi again", user_email=EMAIL)
        assert (await session.get_state("t1")).error is None


# ---------------------------------------------------------------------------
# Thread ownership
# ---------------------------------------------------------------------------

class TestOwnership:
    async def test_other_user_cannot_continue_thread(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.chat("t1", "CUST-99", "hello", user_email="sam@example.com")

    async def test_other_user_cannot_read_history(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.get_history("t1", "CUST-99")

    async def test_other_user_cannot_read_checkpoint(self, session):
        result = await session.chat("t1", USER, "hello", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.get_checkpoint("t1", result.checkpoint_id, "CUST-99")

    async def test_other_users_order_in_message(self, session, router, gateway):
        router.script = {"intent": "refund_request", "entities": {"order_id": "ORD-2001"}}
        with pytest.raises(AuthorizationError):
            await session.chat("t1", USER, "refund ORD-2001", user_email=EMAIL)
        assert gateway.created_count == 0


# ---------------------------------------------------------------------------
# Checkpoints and threads
# ---------------------------------------------------------------------------

class TestCheckpoints:
    async def test_list_newest_first(self, session):
        first = await session.chat("t1", USER, "one", user_email=EMAIL)
        second = await session.chat("t1", USER, "two", user_email=EMAIL)
        assert await session.list_checkpoints("t1") == [second.checkpoint_id, first.checkpoint_id]
        assert await session.list_checkpoints("t1", limit=1) == [second.checkpoint_id]
        assert await session.list_checkpoints("t1", before=second.checkpoint_id) == [first.checkpoint_id]

    async def test_get_checkpoint(self, session):
        result = await session.chat("t1", USER, "hello", user_email=EMAIL)
        record = await session.get_checkpoint("t1", result.checkpoint_id, USER)
        assert record.state.messages[-1].content == result.content
        assert await session.get_checkpoint("t1", "missing") is None

    async def test_list_threads_per_user(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        await session.chat("t2", "CUST-99", "hello", user_email="sam@example.com")
        threads = await session.list_threads(USER)
        assert [t.thread_id for t in threads] == ["t1"]
        assert threads[0].message_count == 2

    async def test_delete_thread(self, session):
        await session.chat("t1", USER, "one", user_email=EMAIL)
        await session.chat("t1", USER, "two", user_email=EMAIL)
        assert await session.delete_thread("t1", USER) == 2
        assert await session.list_checkpoints("t1") == []
        assert await session.get_state("t1") is None

    async def test_delete_thread_of_other_user(self, session):
        await session.chat("t1", USER, "one", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.delete_thread("t1", "CUST-99")
        assert len(await session.list_checkpoints("t1")) == 1

    async def test_list_checkpoints_of_other_user(self, session):
        await session.chat("t1", USER, "one", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.list_checkpoints("t1", user_id="CUST-99")
        assert len(await session.list_checkpoints("t1", user_id=USER)) == 1


# ---------------------------------------------------------------------------
# Entities are read from the current message
# ---------------------------------------------------------------------------

class TestPerTurnEntities:
    async def test_refund_amount_does_not_carry_to_next_order(self, session, router):
        router.script = {
            "intent": "refund_request", "confidence": 0.95,
            "entities": {"orderId": "ORD-1001", "refundAmount": 10.0},
        }
        await session.chat("t1", USER, "refund $10 of ORD-1001", user_email=EMAIL)
        assert (await session.get_state("t1")).refund_state.requested_amount == 1000

        router.script = {"intent": "refund_request", "confidence": 0.95, "entities": {"orderId": "ORD-1003"}}
        await session.chat("t1", USER, "refund ORD-1003 in full", user_email=EMAIL)
        state = await session.get_state("t1")
        assert state.refund_state.order_id == "ORD-1003"
        assert state.refund_state.requested_amount is None
        assert state.tool_results[-1].input["amount"] is None

    async def test_search_query_follows_current_message(self, session, router):
        router.script = {"intent": "order_inquiry", "confidence": 0.9, "entities": {"orderId": "ORD-1001"}}
        await session.chat("t1", USER, "where is ORD-1001?", user_email=EMAIL)
        first = (await session.get_state("t1")).tool_results[-1]
        assert first.input["query"] == "ORD-1001"

        router.script = {"intent": "order_inquiry", "confidence": 0.9, "entities": {"searchQuery": "keyboard order"}}
        await session.chat("t1", USER, "what about my keyboard order?", user_email=EMAIL)
        second = (await session.get_state("t1")).tool_results[-1]
        assert second.tool_name == "hybrid_search"
        assert second.input["query"] == "keyboard order"

    async def test_product_search_falls_back_to_message(self, session, router):
        router.script = {"intent": "product_search", "confidence": 0.9, "entities": {"searchQuery": "laptop"}}
        await session.chat("t1", USER, "show me laptops", user_email=EMAIL)

        router.script = {"intent": "product_search", "confidence": 0.9, "entities": {}}
        await session.chat("t1", USER, "headphones", user_email=EMAIL)
        assert (await session.get_state("t1")).tool_results[-1].input["query"] == "headphones"


# ---------------------------------------------------------------------------
# Refund status refresh
# ---------------------------------------------------------------------------

class TestRefreshRefund:
    async def test_refresh_checkpoints_new_status(self, session, router, gateway, memory):
        router.script = {"intent": "refund_request", "confidence": 0.95, "entities": {"orderId": "ORD-1001"}}
        await session.chat("t1", USER, "refund ORD-1001", user_email=EMAIL)
        refund_id = (await session.get_state("t1")).refund_state.refund.id
        gateway.update_refund_status(refund_id, "failed")

        refreshed = await session.refresh_refund("t1", USER)
        assert refreshed.status == "completed"
        assert refreshed.refund.status == "failed"
        assert len(await memory.list("t1")) == 2

        state = await session.get_state("t1")
        assert state.refund_state.refund.status == "failed"
        assert state.tool_results[-1].tool_name == "refresh_refund_status"
        assert state.tool_results[-1].input == {"order_id": "ORD-1001", "refund_id": refund_id}

    async def test_no_completed_refund(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        with pytest.raises(ValidationError):
            await session.refresh_refund("t1", USER)

    async def test_unknown_thread(self, session):
        with pytest.raises(ValidationError):
            await session.refresh_refund("nope", USER)

    async def test_other_user(self, session, router):
        router.script = {"intent": "refund_request", "confidence": 0.95, "entities": {"orderId": "ORD-1001"}}
        await session.chat("t1", USER, "refund ORD-1001", user_email=EMAIL)
        with pytest.raises(AuthorizationError):
            await session.refresh_refund("t1", "CUST-99")


# ---------------------------------------------------------------------------
# Refund retry
# ---------------------------------------------------------------------------

class TestRefundRetry:
    async def test_retry_reuses_key_and_creates_one_refund(self, memory, catalog):
        gateway = LostResponseGateway(catalog.payment_intents())
        router = ScriptedRouter({
            "intent": "refund_request", "confidence": 0.95,
            "entities": {"orderId": "ORD-1001", "refundAmount": 10.0},
        })
        session = AgentSession(store=memory, router=router, llm=mock_llm(), gateway=gateway, catalog=catalog)
        await session.start()

        failed = await session.chat("t1", USER, "refund $10 of ORD-1001", user_email=EMAIL)
        assert failed.content.startswith("## Refund Request Failed")
        assert (await session.get_state("t1")).refund_state.status == "failed"

        retried = await session.chat("t1", USER, "please try again", user_email=EMAIL)
        assert retried.content.startswith("## Refund Processed Successfully")

        assert len(gateway.calls) == 2
        assert gateway.calls[0] == gateway.calls[1]
        assert gateway.created_count == 1
        await session.stop()


# ---------------------------------------------------------------------------
# Store fallback and lifecycle
# ---------------------------------------------------------------------------

class TestStoreFallback:
    async def test_failing_redis_store_switches_to_memory(self, catalog, router, caplog):
        broken = BrokenRedisStore()
        session = AgentSession(store=broken, router=router, llm=mock_llm(), catalog=catalog)
        await session.start()
        assert session.store_backend == "redis"

        with caplog.at_level("WARNING", logger="support_agent.session"):
            result = await session.chat("t1", USER, "hello", user_email=EMAIL)

        assert session.store_backend == "memory"
        assert broken.closed
        assert "switching to in-memory store" in caplog.text
        assert await session.list_checkpoints("t1") == [result.checkpoint_id]

    async def test_memory_store_errors_propagate(self, catalog, router):
        class BrokenMemoryStore(MemoryCheckpointStore):
            async def get_record(self, thread_id, checkpoint_id=None):
                raise ExternalServiceError("boom", service="memory")

        session = AgentSession(store=BrokenMemoryStore(), router=router, llm=mock_llm(), catalog=catalog)
        await session.start()
        with pytest.raises(ExternalServiceError):
            await session.chat("t1", USER, "hello")


class TestLifecycle:
    async def test_chat_before_start(self, memory, router):
        session = AgentSession(store=memory, router=router, llm=mock_llm())
        with pytest.raises(RuntimeError):
            await session.chat("t1", USER, "hello")

    async def test_start_opens_store_from_env(self, router, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        session = AgentSession(router=router, llm=mock_llm())
        assert session.store_backend == "none"
        await session.start()
        assert session.store_backend == "memory"
        result = await session.chat("t1", USER, "hello", user_email=EMAIL)
        assert result.content == "Happy to help with that!"
        await session.stop()

    async def test_extend_thread(self, session):
        await session.chat("t1", USER, "hello", user_email=EMAIL)
        assert await session.extend_thread("t1", 60) == 1
