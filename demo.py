"""
Interactive CLI Demo
=====================
Try the intent-routed support agent in your terminal.

Usage:
    python demo.py
    LOG_LEVEL=INFO python demo.py        # show classifier / routing / store logs
    REDIS_URL=redis://localhost:6379/0 python demo.py   # durable checkpoints

Suggested conversations to test each workflow (you are alex@example.com):

  Refund workflow (eligible, inside the 30-day window):
    "I want a refund for order ORD-1001, the laptop stopped working"

  Refund workflow (rejected by policy, the gateway is never called):
    "Please refund ORD-1002"              ← 45 days old

  Retrieval workflow:
    "What's the status of order ORD-1001?"
    "Can you recommend something similar to noise-cancelling headphones?"

  Isolation (another customer's order):
    "Where is order ORD-2001?"            ← belongs to sam@example.com

  General support:
    "How do I change my shipping address?"

Commands: 'quit' to exit, 'new' for a fresh thread, 'json' / 'markdown' to
switch the response format, 'history' to list the current thread's checkpoints,
'refresh' to re-check the status of the thread's refund.
"""
import asyncio
import logging
import os
import uuid

from support_agent import AgentSession, SupportAgentError

USER_ID = "CUST-42"
USER_EMAIL = "alex@example.com"


async def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("\n" + "=" * 60)
    print("  ShopEasy Customer Support Agent")
    print("  Intent routing + Refunds + Hybrid retrieval")
    print("=" * 60)
    print("\nAvailable test orders (customer CUST-42, alex@example.com):")
    print("  ORD-1001  Laptop Pro X ($899.99)     — delivered 10 days ago")
    print("  ORD-1002  Mechanical Keyboard ($149.99) — delivered 45 days ago")
    print("  ORD-1003  USB-C Hub ($49.99)         — processing, ordered 2 days ago")
    print("\nType 'quit' to exit, 'new' to start a fresh thread.\n")

    session = AgentSession()
    await session.start()
    thread_id = str(uuid.uuid4())
    response_format = "markdown"

    print(f"Thread: {thread_id[:8]}... (checkpoint store: {session.store_backend})\n")
    print("Agent: Hello! I'm your ShopEasy support agent. How can I help you today?\n")

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            command = user_input.lower()
            if command == "quit":
                print("\nAgent: Thank you for contacting ShopEasy. Goodbye!")
                break

            if command == "new":
                thread_id = str(uuid.uuid4())
                print(f"\n[New thread: {thread_id[:8]}...]\n")
                print("Agent: Hello! How can I help you today?\n")
                continue

            if command in ("json", "markdown"):
                response_format = command
                print(f"\n[Response format: {response_format}]\n")
                continue

            if command == "history":
                ids = await session.list_checkpoints(thread_id, user_id=USER_ID)
                print(f"\n[{len(ids)} checkpoint(s), newest first]")
                for checkpoint_id in ids:
                    print(f"  {checkpoint_id}")
                print()
                continue

            if command == "refresh":
                try:
                    refund_state = await session.refresh_refund(thread_id, USER_ID)
                except SupportAgentError as exc:
                    print(f"\n[{exc.code}] {exc.user_message}\n")
                    continue
                refund = refund_state.refund
                print(f"\n[Refund {refund.id} for {refund_state.order_id}: {refund.status}]\n")
                continue

            print("\nAgent: ", end="", flush=True)
            try:
                result = await session.chat(
                    thread_id, USER_ID, user_input,
                    user_email=USER_EMAIL, response_format=response_format,
                )
            except SupportAgentError as exc:
                print(f"[{exc.code}] {exc.user_message}\n")
                continue

            async for event in result.stream:
                if event.type == "chunk":
                    print(event.content, end="", flush=True)
            print()
            print(f"\n  [intent: {result.intent} ({result.confidence}) → {result.current_agent}]")
            print()

    finally:
        await session.stop()


if __name__ == "__main__":
    asyncio.run(main())
