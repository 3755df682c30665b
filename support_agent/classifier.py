"""
Intent Classifier (DSPy)
========================
Classifies every incoming message into one of five intents and extracts the
entities the workflows need (order id, product id, amount, ...).

Design decisions:
  - dspy.Predict, not ChainOfThought: this runs on every message.
  - The intent taxonomy lives in the ClassifyIntent docstring.
  - The LLM's output is untrusted text. parse_classifier_output() validates it
    into a frozen IntentClassification: the intent must be one of the five,
    confidence is clamped to [0, 1] (0.8 when missing), and each entity field
    is validated on its own; invalid fields are dropped, not passed on.
  - Anything unparseable, and any failure of the classifier call itself,
    yields FALLBACK: general_support at confidence 0.5. classify() never raises.
  - Only the last ``history_window`` messages are sent to the model.
"""
import asyncio
import json
import logging
import math
import re
from typing import Any, Callable, Mapping, Optional, Sequence

import dspy
import pydantic

from .errors import call_with_timeout
from .routing import route_for_intent
from .state import INTENTS, IntentClassification, Message, QueryContext
from .tool_requests import is_valid_email

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10
DEFAULT_CONFIDENCE = 0.8
FALLBACK_CONFIDENCE = 0.5

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

# Accept the camelCase spellings models tend to produce.
_ENTITY_ALIASES = {
    "orderId": "order_id",
    "productId": "product_id",
    "customerEmail": "customer_email",
    "email": "customer_email",
    "ticketId": "ticket_id",
    "refundAmount": "refund_amount",
    "amount": "refund_amount",
    "searchQuery": "search_query",
    "query": "search_query",
    "dateRange": "date_range",
}


class ClassifyIntent(dspy.Signature):
    """
    Classify a customer's latest message to an e-commerce support desk.

    Intents:
      - refund_request:  wants money back for an order or a charge
      - order_inquiry:   asks about an order's status, contents, delivery or history
      - product_search:  looking for products, recommendations or product details
      - ticket_create:   wants to open a support ticket or escalate a problem
      - general_support: greetings, account or policy questions, anything else

    Extract only entities that are explicitly present in the conversation.
    """
    message: str = dspy.InputField(desc="The customer's latest message")
    history: str = dspy.InputField(desc="Recent conversation, oldest first, one 'role: text' per line")
    known_context: str = dspy.InputField(desc="Entities already known from earlier turns, as JSON")
    classification: str = dspy.OutputField(
        desc=(
            'A single JSON object: {"intent": "<one of the intents>", '
            '"confidence": <0..1>, "entities": {"order_id": ..., "product_id": ..., '
            '"customer_email": ..., "ticket_id": ..., "refund_amount": <dollars>, '
            '"search_query": ..., "date_range": {"start": ..., "end": ...}}}. '
            "Omit entities that are not mentioned."
        )
    )


_predict: Optional[dspy.Predict] = None


def _get_predict() -> dspy.Predict:
    global _predict
    if _predict is None:
        _predict = dspy.Predict(ClassifyIntent)
    return _predict


def predict_classification(message: str, history: str, known_context: str) -> str:
    """Blocking DSPy call. Returns the raw classification text."""
    result = _get_predict()(message=message, history=history, known_context=known_context)
    return result.classification


def fallback_classification() -> IntentClassification:
    return IntentClassification(
        intent="general_support",
        confidence=FALLBACK_CONFIDENCE,
        extracted_entities=QueryContext(),
        suggested_routing=route_for_intent("general_support"),
    )


# ── Output parsing ──────────────────────────────────────────────────────────

def _coerce_mapping(raw: Any) -> Optional[dict]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        return None
    match = _JSON_OBJECT.search(raw)
    if match is None:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def normalize_intent(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    intent = re.sub(r"[\s\-]+", "_", value.strip().lower())
    return intent if intent in INTENTS else None


def _coerce_confidence(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if math.isnan(confidence):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def parse_entities(raw: Any) -> QueryContext:
    """Validate entity fields one by one, dropping any that fail."""
    if not isinstance(raw, Mapping):
        return QueryContext()
    accepted: dict[str, Any] = {}
    for key, value in raw.items():
        name = _ENTITY_ALIASES.get(key, key)
        if name not in QueryContext.model_fields or value in (None, ""):
            continue
        if name == "customer_email" and not (isinstance(value, str) and is_valid_email(value)):
            continue
        try:
            QueryContext.model_validate({name: value})
        except pydantic.ValidationError:
            logger.debug("[classifier] Dropping invalid entity %s=%r", name, value)
            continue
        accepted[name] = value
    return QueryContext.model_validate(accepted)


def parse_classifier_output(raw: Any) -> IntentClassification:
    """
    Validate raw classifier output (a mapping, or text containing one JSON
    object) into an IntentClassification. Falls back instead of raising.
    """
    data = _coerce_mapping(raw)
    if data is None:
        logger.warning("[classifier] Unparseable output, using fallback: %r", raw)
        return fallback_classification()

    intent = normalize_intent(data.get("intent"))
    if intent is None:
        logger.warning("[classifier] Unknown intent %r, using fallback", data.get("intent"))
        return fallback_classification()

    return IntentClassification(
        intent=intent,
        confidence=_coerce_confidence(data.get("confidence")),
        extracted_entities=parse_entities(data.get("entities", data.get("extracted_entities"))),
        suggested_routing=route_for_intent(intent),
    )


# ── Router ──────────────────────────────────────────────────────────────────

def format_history(messages: Sequence[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class IntentRouter:
    """
    classify(message, recent_history, context) → IntentClassification

    ``classify_fn`` is the blocking classifier call (defaults to the DSPy
    predictor); it runs in a worker thread, bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        classify_fn: Optional[Callable[[str, str, str], Any]] = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        timeout: Optional[float] = 20.0,
    ):
        self._classify_fn = classify_fn or predict_classification
        self.history_window = history_window
        self.timeout = timeout

    def recent(self, history: Sequence[Message]) -> list[Message]:
        if self.history_window <= 0:
            return []
        return list(history)[-self.history_window:]

    async def classify(
        self,
        message: str,
        recent_history: Sequence[Message] = (),
        context: Optional[QueryContext] = None,
    ) -> IntentClassification:
        history = format_history(self.recent(recent_history))
        known = (context or QueryContext()).model_dump_json(exclude_none=True)
        try:
            raw = await call_with_timeout(
                asyncio.to_thread(self._classify_fn, message, history, known),
                self.timeout,
                "classifier",
            )
        except Exception as exc:
            logger.warning("[classifier] Classifier call failed, using fallback: %s", exc, exc_info=True)
            return fallback_classification()

        classification = parse_classifier_output(raw)
        logger.info(
            "[classifier] intent=%s confidence=%.2f route=%s",
            classification.intent, classification.confidence, classification.suggested_routing,
        )
        return classification
