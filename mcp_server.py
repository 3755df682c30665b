"""
MCP Server: Support Record Service
==================================
Exposes validated record lookups via the Model Context Protocol.

Tools:
  - query_records    → Read-only. Look up customers, products, orders or
                       tickets on behalf of one user.
  - search_records   → Read-only. Hybrid (lexical + semantic) search over the
                       records visible to one user.

Every request is validated before any lookup runs: unknown fields, a bad
email, or an identifier belonging to another user is rejected with
{"error": CODE, "message": "..."} and nothing is returned.

Run standalone:   python mcp_server.py
"""
import json
from typing import Optional

from mcp.server.fastmcp import FastMCP

from support_agent.catalog import Catalog, CatalogLexicalBackend, CatalogSemanticBackend
from support_agent.errors import SupportAgentError
from support_agent.retrieval import HybridRetriever, SearchOptions
from support_agent.tool_requests import execute_tool_call, is_valid_email

mcp = FastMCP("Support Record Service")

# ---------------------------------------------------------------------------
# Sample data: replace with real DB / index clients in production
# ---------------------------------------------------------------------------

catalog = Catalog()
retriever = HybridRetriever(
    lexical=CatalogLexicalBackend(catalog),
    semantic=CatalogSemanticBackend(catalog),
)


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------

@mcp.tool()
def query_records(type: str, user_email: str, identifiers: list[dict]) -> str:
    """
    Look up records of one type for the requesting user.

    Only records owned by ``user_email`` are returned; products are
    catalogue data and visible to everyone.

    Args:
        type:        One of: customer | product | order | ticket
        user_email:  Email of the user the lookup is made for
        identifiers: One object per record, e.g. [{"orderId": "ORD-1001"}].
                     Customer lookups use {"email": ...}, products
                     {"productId": ...}, tickets {"ticketId": ...}.
    """
    try:
        result = execute_tool_call(
            {"type": type, "userEmail": user_email, "identifiers": identifiers},
            catalog,
        )
    except SupportAgentError as exc:
        return json.dumps(exc.to_dict())
    return json.dumps(result)


@mcp.tool()
async def search_records(
    query: str,
    user_email: str,
    context: str = "general_support",
    limit: Optional[int] = 10,
) -> str:
    """
    Hybrid search over the products, orders and tickets visible to a user.

    Args:
        query:      Free-text query, e.g. "order ORD-1001" or
                    "something similar to noise-cancelling headphones"
        user_email: Email of the user the search is made for
        context:    recommendation | product_search | order_inquiry |
                    ticket_lookup | general_support
        limit:      Maximum number of results (default 10)
    """
    if not is_valid_email(user_email):
        return json.dumps({"error": "VALIDATION_ERROR", "message": "Invalid email format."})
    try:
        options = SearchOptions(limit=limit or 10, owner_email=user_email)
        response = await retriever.search(query, context, options)
    except SupportAgentError as exc:
        return json.dumps(exc.to_dict())
    return json.dumps({
        "query": response.query,
        "strategies": response.routing_decision.strategies,
        "failed_sources": response.failed_sources,
        "results": [
            {"id": h.id, "kind": h.kind, "title": h.title, "score": h.score, "match_type": h.match_type}
            for h in response.results
        ],
    })


if __name__ == "__main__":
    mcp.run()
