"""
Checkpointing
=============
The checkpoint store contract and the factory that picks a backend.

Two backends implement CheckpointStore:

  Redis (durable)
  ───────────────
  RedisCheckpointStore in redis_store.py. Per-key TTL enforced by Redis.
  Selected when REDIS_URL is set AND a PING health probe succeeds within
  REDIS_PROBE_TIMEOUT seconds.

  Memory (in-process only)
  ────────────────────────
  MemoryCheckpointStore in memory_store.py. Same TTL semantics checked
  locally, plus eviction of the oldest records past a maximum entry count.
  Used when Redis is not configured or unreachable, and in tests.

Usage pattern:

    store = await open_checkpoint_store()          # never raises
    session = AgentSession(store=store)

open_checkpoint_store() logs which backend it chose and why. The caller owns
the returned store and should close() it on shutdown.

Environment:
  REDIS_URL                       unset → memory store
  CHECKPOINT_TTL_SECONDS          default 86400
  CHECKPOINT_KEY_PREFIX           default "" (prepended to every Redis key)
  CHECKPOINT_MEMORY_MAX_ENTRIES   default 1000
  REDIS_PROBE_TIMEOUT             default 2.0 seconds
  REDIS_OP_TIMEOUT                default 5.0 seconds
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from redis import asyncio as aioredis

from .errors import ExternalServiceError
from .state import CheckpointRecord, ConversationState, ThreadMetadata

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86_400
DEFAULT_CLEANUP_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000
DEFAULT_MEMORY_MAX_ENTRIES = 1000
DEFAULT_PROBE_TIMEOUT = 2.0
DEFAULT_OP_TIMEOUT = 5.0
DEFAULT_LIST_LIMIT = 10


def get_redis_url() -> Optional[str]:
    """REDIS_URL, or None when unset/blank."""
    return os.getenv("REDIS_URL", "").strip() or None


def get_ttl_seconds() -> int:
    return int(os.getenv("CHECKPOINT_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))


@dataclass(frozen=True)
class StoreConfig:
    redis_url: Optional[str] = None
    ttl_seconds: int = DEFAULT_TTL_SECONDS
    key_prefix: str = ""
    memory_max_entries: int = DEFAULT_MEMORY_MAX_ENTRIES
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    op_timeout: float = DEFAULT_OP_TIMEOUT

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            redis_url=get_redis_url(),
            ttl_seconds=get_ttl_seconds(),
            key_prefix=os.getenv("CHECKPOINT_KEY_PREFIX", ""),
            memory_max_entries=int(os.getenv(
                "CHECKPOINT_MEMORY_MAX_ENTRIES", str(DEFAULT_MEMORY_MAX_ENTRIES),
            )),
            probe_timeout=float(os.getenv("REDIS_PROBE_TIMEOUT", str(DEFAULT_PROBE_TIMEOUT))),
            op_timeout=float(os.getenv("REDIS_OP_TIMEOUT", str(DEFAULT_OP_TIMEOUT))),
        )


def resolve_ttl(ttl_seconds: Optional[int], default: int) -> int:
    ttl = default if ttl_seconds is None else ttl_seconds
    if ttl <= 0:
        raise ValueError(f"ttl_seconds must be positive, got {ttl}")
    return ttl


def build_thread_metadata(
    previous: Optional[ThreadMetadata],
    thread_id: str,
    checkpoint_id: str,
    state: ConversationState,
    checkpoint_count: int,
    now: int,
) -> ThreadMetadata:
    """Recompute the denormalized thread summary after a checkpoint write."""
    return ThreadMetadata(
        thread_id=thread_id,
        user_id=state.metadata.user_id,
        message_count=len(state.messages),
        checkpoint_count=checkpoint_count,
        last_checkpoint_id=checkpoint_id,
        created_at=previous.created_at if previous else now,
        last_accessed=now,
    )


class CheckpointStore(ABC):
    """
    Durable, namespaced, TTL-bound persistence of ConversationState.

    Records are addressed by (thread_id, checkpoint_id). A per-thread index
    ordered by creation time answers "latest" and "list" queries. Each record
    gets its own absolute expiry at write time; writing to a thread refreshes
    the expiry of the thread's index and metadata.
    """

    backend: str = "abstract"

    @abstractmethod
    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        state: ConversationState,
        metadata: Optional[dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None: ...

    @abstractmethod
    async def get_record(
        self, thread_id: str, checkpoint_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        """The record for checkpoint_id, or the newest live one when omitted."""

    async def load(
        self, thread_id: str, checkpoint_id: Optional[str] = None,
    ) -> Optional[ConversationState]:
        record = await self.get_record(thread_id, checkpoint_id)
        return record.state if record else None

    @abstractmethod
    async def list(
        self, thread_id: str, limit: int = DEFAULT_LIST_LIMIT, before: Optional[str] = None,
    ) -> list[str]:
        """Checkpoint ids, newest first. ``before`` excludes it and anything newer."""

    @abstractmethod
    async def delete(self, thread_id: str, checkpoint_id: str) -> bool: ...

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> int: ...

    @abstractmethod
    async def extend_ttl(self, thread_id: str, additional_seconds: int) -> int: ...

    @abstractmethod
    async def cleanup_expired(
        self, thread_id: str, max_age_ms: int = DEFAULT_CLEANUP_MAX_AGE_MS,
    ) -> int:
        """Remove checkpoints created more than max_age_ms ago."""

    @abstractmethod
    async def get_thread_metadata(self, thread_id: str) -> Optional[ThreadMetadata]: ...

    @abstractmethod
    async def list_threads(self, user_id: Optional[str] = None) -> list[ThreadMetadata]:
        """Thread summaries, most recently accessed first."""

    @abstractmethod
    async def ping(self) -> float:
        """Round-trip latency in milliseconds."""

    async def close(self) -> None:
        return None


def memory_store(config: Optional[StoreConfig] = None):
    """Return a fresh MemoryCheckpointStore configured from ``config``."""
    from .memory_store import MemoryCheckpointStore

    config = config or StoreConfig.from_env()
    return MemoryCheckpointStore(
        max_entries=config.memory_max_entries,
        default_ttl_seconds=config.ttl_seconds,
    )


async def open_checkpoint_store(config: Optional[StoreConfig] = None) -> CheckpointStore:
    """
    Pick the checkpoint backend for this process.

    Redis when configured and healthy, otherwise memory. The fallback is
    logged; this function never raises.
    """
    from .redis_store import RedisCheckpointStore

    config = config or StoreConfig.from_env()

    if not config.redis_url:
        logger.info("[checkpointing] REDIS_URL not set, using in-memory store")
        return memory_store(config)

    try:
        client = aioredis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_connect_timeout=config.probe_timeout,
            socket_timeout=config.op_timeout,
        )
    except ValueError as exc:
        logger.warning("[checkpointing] Invalid REDIS_URL (%s), using in-memory store", exc)
        return memory_store(config)

    store = RedisCheckpointStore(client, config)
    try:
        latency = await store.ping()
    except ExternalServiceError as exc:
        logger.warning(
            "[checkpointing] Redis health probe failed (%s), falling back to in-memory store", exc,
        )
        await store.close()
        return memory_store(config)

    logger.info("[checkpointing] Redis checkpoint store healthy (%.1f ms)", latency)
    return store
