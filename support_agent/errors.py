"""
Errors
======
Error taxonomy shared by every workflow, store and boundary adapter.

Each class carries a stable machine-readable ``code`` and a sanitized
``user_message`` that is safe to show to a customer. The exception's own
message (``str(exc)``) may contain internal detail and is meant for logs only.

    SupportAgentError
      ├── ValidationError        malformed input (bad email, missing identifiers)
      ├── AuthorizationError     cross-user data access attempt
      ├── EligibilityError       refund policy violation
      ├── SerializationError     checkpoint payload malformed on read
      └── ExternalServiceError   classifier / gateway / store / search backend
            ├── CallTimeoutError external call exceeded its bound
            └── InitiateError    payment reference could not be resolved
"""
import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class SupportAgentError(Exception):
    """Base class. Never raised directly."""

    code: str = "SUPPORT_AGENT_ERROR"
    user_message: str = "Something went wrong while handling your request."

    def __init__(self, message: str, *, code: str | None = None, user_message: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        if user_message is not None:
            self.user_message = user_message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.user_message}


class ValidationError(SupportAgentError):
    code = "VALIDATION_ERROR"
    user_message = "The request was malformed."


class AuthorizationError(SupportAgentError):
    code = "AUTHORIZATION_ERROR"
    user_message = "Access denied: you can only access your own data."


class EligibilityError(SupportAgentError):
    code = "ELIGIBILITY_ERROR"
    user_message = "This order is not eligible for a refund."

    def __init__(self, message: str, *, violations: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.violations = list(violations or [])


class SerializationError(SupportAgentError):
    code = "SERIALIZATION_ERROR"
    user_message = "Saved conversation data could not be read."


class ExternalServiceError(SupportAgentError):
    code = "EXTERNAL_SERVICE_ERROR"
    user_message = "A service we depend on is unavailable right now. Please try again shortly."

    def __init__(self, message: str, *, service: str = "unknown", **kwargs):
        super().__init__(message, **kwargs)
        self.service = service


class CallTimeoutError(ExternalServiceError):
    code = "TIMEOUT"
    user_message = "A service we depend on took too long to respond. Please try again shortly."


class InitiateError(ExternalServiceError):
    code = "INITIATE_ERROR"
    user_message = "We could not find the payment for this order."


async def call_with_timeout(awaitable: Awaitable[T], seconds: float | None, service: str) -> T:
    """
    Await an external call, converting an expired bound into CallTimeoutError.

    ``seconds=None`` disables the bound.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise CallTimeoutError(
            f"{service} call exceeded {seconds}s", service=service,
        ) from exc
