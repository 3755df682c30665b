"""
Tool-Call Requests
==================
Boundary validation for record lookups coming from the transport layer
(HTTP /tools/query, the MCP query_records tool).

Wire format:

    {"type": "customer" | "product" | "order" | "ticket",
     "userEmail": "alex@example.com",
     "identifiers": [{"email"?, "orderId"?, "productId"?, "ticketId"?}, ...]}

parse_tool_request() turns that into a strict ToolCallRequest before any
lookup runs:
  - unknown keys, a bad email, an empty identifier list or an identifier
    missing the id its type needs  → ValidationError
  - an identifier email that differs from userEmail (case-insensitive)
                                   → AuthorizationError

execute_tool_call() then only ever returns records owned by userEmail.
Products are catalogue data and have no owner.
"""
import logging
import re
from typing import Any, Literal, Mapping, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import AuthorizationError, ValidationError

logger = logging.getLogger(__name__)

ToolType = Literal["customer", "product", "order", "ticket"]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Which identifier field each request type must carry.
REQUIRED_IDENTIFIER: dict[str, str] = {
    "customer": "email",
    "product": "product_id",
    "order": "order_id",
    "ticket": "ticket_id",
}


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value.strip()))


def same_owner(user_email: str, record_email: Optional[str]) -> bool:
    return record_email is not None and record_email.strip().lower() == user_email.strip().lower()


def ensure_owner(user_email: Optional[str], record_email: Optional[str]) -> None:
    """Raise AuthorizationError unless the record belongs to user_email."""
    if not user_email or not same_owner(user_email, record_email):
        raise AuthorizationError("record owner does not match requesting user")


class Identifier(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)

    email: Optional[str] = None
    order_id: Optional[str] = Field(default=None, alias="orderId")
    product_id: Optional[str] = Field(default=None, alias="productId")
    ticket_id: Optional[str] = Field(default=None, alias="ticketId")


class ToolCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)

    type: ToolType
    user_email: str = Field(alias="userEmail")
    identifiers: list[Identifier]


def _describe(exc: pydantic.ValidationError) -> str:
    fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
    return f"Invalid or missing fields: {', '.join(fields)}"


def parse_tool_request(raw: Mapping[str, Any] | ToolCallRequest) -> ToolCallRequest:
    if isinstance(raw, ToolCallRequest):
        request = raw
    else:
        try:
            request = ToolCallRequest.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc), user_message=_describe(exc)) from exc

    if not is_valid_email(request.user_email):
        raise ValidationError("invalid userEmail", user_message="Invalid email format.")
    if not request.identifiers:
        raise ValidationError("no identifiers", user_message="At least one identifier is required.")

    required = REQUIRED_IDENTIFIER[request.type]
    for position, identifier in enumerate(request.identifiers):
        if identifier.email is not None and not is_valid_email(identifier.email):
            raise ValidationError(
                f"identifier {position} has invalid email", user_message="Invalid email format.",
            )
        if getattr(identifier, required) is None:
            raise ValidationError(
                f"identifier {position} missing {required}",
                user_message=f"Each identifier for a {request.type} request needs '{required}'.",
            )
        if identifier.email is not None and not same_owner(request.user_email, identifier.email):
            raise AuthorizationError(
                f"identifier {position} email differs from userEmail",
                user_message="Access denied: identifier email does not match the requesting user.",
            )
    return request


def execute_tool_call(request: Mapping[str, Any] | ToolCallRequest, catalog) -> dict:
    """
    Resolve every identifier against ``catalog`` for the requesting user.

    Returns {"type", "records", "not_found"}. A record owned by someone else
    raises AuthorizationError rather than being returned or silently skipped.
    """
    request = parse_tool_request(request)
    records: list[dict] = []
    not_found: list[str] = []

    for identifier in request.identifiers:
        if request.type == "product":
            record = catalog.get_product(identifier.product_id)
            key = identifier.product_id
        elif request.type == "customer":
            record = catalog.get_customer_by_email(identifier.email)
            key = identifier.email
        elif request.type == "order":
            record = catalog.get_order(identifier.order_id)
            key = identifier.order_id
        else:
            record = catalog.get_ticket(identifier.ticket_id)
            key = identifier.ticket_id

        if record is None:
            not_found.append(key)
            continue
        if request.type != "product":
            ensure_owner(request.user_email, record.get("email"))
        records.append(record)

    logger.info(
        "[tool_requests] type=%s records=%d not_found=%d", request.type, len(records), len(not_found),
    )
    return {"type": request.type, "records": records, "not_found": not_found}
