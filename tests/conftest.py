"""
pytest configuration for the support-orchestrator test suite.

Sets PYTHONPATH so tests can import from the project root.
Prevents DSPy and LangChain from making real LLM calls during unit tests:
sessions get a scripted IntentRouter and a mocked chat model.

asyncio_mode = "auto" (set in pyproject.toml) means all async test functions
are automatically collected as asyncio tests — no @pytest.mark.asyncio
needed on individual tests.
"""
import os
import sys
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

# Ensure the project root is on sys.path so `import support_agent`, `import api`
# and `import mcp_server` work
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Tests use mocked values and should not need real keys or a real Redis
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("LLM_PROVIDER", "groq")
os.environ.pop("REDIS_URL", None)
os.environ.pop("STRIPE_API_KEY", None)
os.environ.pop("STRIPE_SECRET_KEY", None)

from support_agent.catalog import Catalog  # noqa: E402
from support_agent.classifier import IntentRouter, parse_classifier_output  # noqa: E402
from support_agent.memory_store import MemoryCheckpointStore  # noqa: E402
from support_agent.payments import InMemoryPaymentGateway  # noqa: E402
from support_agent.state import IntentClassification, Message  # noqa: E402


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class ScriptedRouter(IntentRouter):
    """
    IntentRouter whose classifier output is set per test.

    ``script`` is the raw classifier output (a dict or JSON text) returned for
    every message; it still goes through parse_classifier_output().
    """

    def __init__(self, script=None):
        super().__init__(classify_fn=self._reply, timeout=None)
        self.script = script if script is not None else {"intent": "general_support", "confidence": 0.9}
        self.calls: list[tuple[str, str, str]] = []

    def _reply(self, message: str, history: str, known_context: str):
        self.calls.append((message, history, known_context))
        return self.script


def classification(intent: str, confidence: float = 0.9, **entities) -> IntentClassification:
    return parse_classifier_output({"intent": intent, "confidence": confidence, "entities": entities})


def mock_llm(reply: str = "Happy to help with that!") -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=AIMessage(
        content=reply, usage_metadata={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
    ))
    return llm


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory(clock) -> MemoryCheckpointStore:
    return MemoryCheckpointStore(max_entries=100, default_ttl_seconds=60, clock=clock)


@pytest.fixture
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture
def gateway(catalog) -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway(catalog.payment_intents())


@pytest.fixture
def router() -> ScriptedRouter:
    return ScriptedRouter()


def human(content: str, timestamp: Optional[int] = None) -> Message:
    if timestamp is None:
        return Message(role="human", content=content)
    return Message(role="human", content=content, timestamp=timestamp)
