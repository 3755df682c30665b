"""
Sample Catalog
==============
In-memory customers, orders, products and tickets used by the CLI demo, the
MCP server and the test suite, plus two SearchBackends over them:

  CatalogLexicalBackend   exact id matches score 1.0, otherwise the share of
                          query terms found in the record
  CatalogSemanticBackend  character-trigram containment, a stand-in for a
                          vector index

Both backends only return orders/tickets owned by ``owner_email``; products
are visible to everyone. Replace with real DB / index clients in production.

Order dates are relative to import time so the demo's refund window behaves
the same whenever it is run.
"""
import copy
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .payments import PaymentIntentInfo
from .retrieval import SearchHit
from .tool_requests import same_owner

_TERM = re.compile(r"[a-z0-9]+")


def _days_ago(days: int) -> str:
    return (datetime.now(tz=timezone.utc) - timedelta(days=days)).isoformat()


def _to_ms(iso: str) -> int:
    return int(datetime.fromisoformat(iso).timestamp() * 1000)


CUSTOMERS = {
    "CUST-42": {
        "customer_id": "CUST-42",
        "name": "Alex Johnson",
        "email": "alex@example.com",
        "tier": "gold",
    },
    "CUST-77": {
        "customer_id": "CUST-77",
        "name": "Sam Rivera",
        "email": "sam@example.com",
        "tier": "standard",
    },
}

PRODUCTS = {
    "PROD-100": {
        "product_id": "PROD-100",
        "name": "Laptop Pro X",
        "description": "14-inch laptop, 32GB RAM, model LPX-14",
        "sku": "LPX14",
        "price": 899.99,
    },
    "PROD-200": {
        "product_id": "PROD-200",
        "name": "Noise-Cancelling Headphones",
        "description": "Over-ear wireless headphones with active noise cancelling",
        "sku": "NCH700",
        "price": 249.00,
    },
    "PROD-201": {
        "product_id": "PROD-201",
        "name": "Wireless Earbuds",
        "description": "In-ear buds with noise reduction and a charging case",
        "sku": "WEB200",
        "price": 129.00,
    },
    "PROD-300": {
        "product_id": "PROD-300",
        "name": "Mechanical Keyboard",
        "description": "Tenkeyless mechanical keyboard with brown switches",
        "sku": "MK87",
        "price": 149.99,
    },
    "PROD-400": {
        "product_id": "PROD-400",
        "name": "USB-C Hub",
        "description": "7-in-1 USB-C hub with HDMI and card reader",
        "sku": "HUB7",
        "price": 49.99,
    },
}

ORDERS = {
    "ORD-1001": {
        "order_id": "ORD-1001",
        "email": "alex@example.com",
        "status": "delivered",
        "items": [{"product_id": "PROD-100", "name": "Laptop Pro X", "qty": 1, "price": 899.99}],
        "total": 899.99,
        "order_date": _days_ago(10),
        "payment_intent_id": "pi_1001",
        "payment_status": "succeeded",
    },
    "ORD-1002": {
        "order_id": "ORD-1002",
        "email": "alex@example.com",
        "status": "delivered",
        "items": [{"product_id": "PROD-300", "name": "Mechanical Keyboard", "qty": 1, "price": 149.99}],
        "total": 149.99,
        "order_date": _days_ago(45),
        "payment_intent_id": "pi_1002",
        "payment_status": "succeeded",
    },
    "ORD-1003": {
        "order_id": "ORD-1003",
        "email": "alex@example.com",
        "status": "processing",
        "items": [{"product_id": "PROD-400", "name": "USB-C Hub", "qty": 1, "price": 49.99}],
        "total": 49.99,
        "order_date": _days_ago(2),
        "payment_intent_id": "pi_1003",
        "payment_status": "requires_capture",
    },
    "ORD-2001": {
        "order_id": "ORD-2001",
        "email": "sam@example.com",
        "status": "shipped",
        "items": [{"product_id": "PROD-200", "name": "Noise-Cancelling Headphones", "qty": 1, "price": 249.00}],
        "total": 249.00,
        "order_date": _days_ago(5),
        "payment_intent_id": "pi_2001",
        "payment_status": "succeeded",
    },
}

TICKETS = {
    "TKT-5001": {
        "ticket_id": "TKT-5001",
        "email": "sam@example.com",
        "subject": "Headphones arrived with a cracked case",
        "status": "open",
        "order_id": "ORD-2001",
        "created_at": _days_ago(1),
    },
}


def _terms(text: str) -> list[str]:
    return _TERM.findall(text.lower())


def _trigrams(text: str) -> set[str]:
    normalized = " ".join(_terms(text))
    return {normalized[i:i + 3] for i in range(len(normalized) - 2)}


class Catalog:
    """Deep-copied sample data with the lookups the workflows need."""

    def __init__(self, customers=None, orders=None, products=None, tickets=None):
        self.customers = copy.deepcopy(customers if customers is not None else CUSTOMERS)
        self.orders = copy.deepcopy(orders if orders is not None else ORDERS)
        self.products = copy.deepcopy(products if products is not None else PRODUCTS)
        self.tickets = copy.deepcopy(tickets if tickets is not None else TICKETS)

    def get_order(self, order_id: Optional[str]) -> Optional[dict]:
        return self.orders.get((order_id or "").upper())

    def get_product(self, product_id: Optional[str]) -> Optional[dict]:
        return self.products.get((product_id or "").upper())

    def get_ticket(self, ticket_id: Optional[str]) -> Optional[dict]:
        return self.tickets.get((ticket_id or "").upper())

    def get_customer_by_email(self, email: Optional[str]) -> Optional[dict]:
        for customer in self.customers.values():
            if email and same_owner(email, customer["email"]):
                return customer
        return None

    def orders_for(self, email: str) -> list[dict]:
        return [o for o in self.orders.values() if same_owner(email, o["email"])]

    def create_ticket(self, email: str, subject: str, order_id: Optional[str] = None) -> dict:
        ticket = {
            "ticket_id": f"TKT-{uuid.uuid4().hex[:6].upper()}",
            "email": email,
            "subject": subject[:200],
            "status": "open",
            "order_id": order_id,
            "created_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        self.tickets[ticket["ticket_id"]] = ticket
        return ticket

    def payment_intents(self) -> Iterable[PaymentIntentInfo]:
        for order in self.orders.values():
            amount = round(order["total"] * 100)
            yield PaymentIntentInfo(
                id=order["payment_intent_id"],
                amount=amount,
                amount_received=amount,
                currency="usd",
                status=order["payment_status"],
                created_at=_to_ms(order["order_date"]),
                customer_email=order["email"],
                metadata={"order_id": order["order_id"]},
            )

    def searchable(self, owner_email: Optional[str]) -> Iterable[tuple[str, str, str, str, dict]]:
        """(kind, id, title, text, record) for every record visible to owner_email."""
        for product in self.products.values():
            text = f"{product['product_id']} {product['name']} {product['description']} sku {product['sku']}"
            yield "product", product["product_id"], product["name"], text, product
        if not owner_email:
            return
        for order in self.orders_for(owner_email):
            names = " ".join(item["name"] for item in order["items"])
            text = f"order {order['order_id']} {order['status']} {names}"
            yield "order", order["order_id"], f"Order {order['order_id']}", text, order
        for ticket in self.tickets.values():
            if same_owner(owner_email, ticket["email"]):
                text = f"ticket {ticket['ticket_id']} {ticket['subject']} {ticket['status']}"
                yield "ticket", ticket["ticket_id"], ticket["subject"], text, ticket


class CatalogLexicalBackend:
    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    async def search(self, query: str, *, limit: int, owner_email: Optional[str] = None) -> list[SearchHit]:
        query_terms = set(_terms(query))
        if not query_terms:
            return []
        hits = []
        for kind, record_id, title, text, record in self.catalog.searchable(owner_email):
            record_terms = set(_terms(text))
            id_terms = set(_terms(record_id)) - {"ord", "prod", "tkt"}
            if id_terms and id_terms <= query_terms:
                score = 1.0
            else:
                score = len(query_terms & record_terms) / len(query_terms)
            if score > 0:
                hits.append(SearchHit(
                    id=record_id, kind=kind, title=title, content=text,
                    score=round(score, 4), match_type="lexical", metadata=record,
                ))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]


class CatalogSemanticBackend:
    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    async def search(self, query: str, *, limit: int, owner_email: Optional[str] = None) -> list[SearchHit]:
        query_grams = _trigrams(query)
        if not query_grams:
            return []
        hits = []
        for kind, record_id, title, text, record in self.catalog.searchable(owner_email):
            score = len(query_grams & _trigrams(text)) / len(query_grams)
            if score > 0:
                hits.append(SearchHit(
                    id=record_id, kind=kind, title=title, content=text,
                    score=round(score, 4), match_type="semantic", metadata=record,
                ))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]
