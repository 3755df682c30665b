"""
Redis Checkpoint Store
======================
Durable CheckpointStore on redis-py's asyncio client.

Key schema (every key carries the configured prefix):

    checkpoint:{thread_id}:{checkpoint_id}   STRING  CheckpointRecord JSON, EX ttl
    index:{thread_id}                        ZSET    checkpoint_id scored by created_at (ms)
    metadata:{thread_id}                     STRING  ThreadMetadata JSON
    threads:{user_id}                        SET     thread ids owned by the user

Writes that touch more than one key run in a MULTI/EXEC pipeline, so readers
never observe a checkpoint without its index entry or a half-deleted thread.

Each checkpoint key expires on its own (Redis TTL). The index, metadata and
thread-set keys get their TTL pushed out on every save to the thread; index
members whose checkpoint key has already expired are pruned lazily on read.

Redis failures surface as ExternalServiceError (the session reacts by
switching to the in-memory store); unreadable payloads raise
SerializationError.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import pydantic
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .checkpointing import (
    DEFAULT_CLEANUP_MAX_AGE_MS,
    DEFAULT_LIST_LIMIT,
    CheckpointStore,
    StoreConfig,
    build_thread_metadata,
    resolve_ttl,
)
from .errors import ExternalServiceError, SerializationError, call_with_timeout
from .state import CheckpointRecord, ConversationState, ThreadMetadata, now_ms

logger = logging.getLogger(__name__)


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise ExternalServiceError(f"redis {operation} failed: {exc}", service="redis") from exc


class RedisCheckpointStore(CheckpointStore):
    backend = "redis"

    def __init__(
        self,
        client: Redis,
        config: Optional[StoreConfig] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._client = client
        self._config = config or StoreConfig()
        self._clock = clock

    # ── Keys ────────────────────────────────────────────────────────────────

    def checkpoint_key(self, thread_id: str, checkpoint_id: str) -> str:
        return f"{self._config.key_prefix}checkpoint:{thread_id}:{checkpoint_id}"

    def index_key(self, thread_id: str) -> str:
        return f"{self._config.key_prefix}index:{thread_id}"

    def metadata_key(self, thread_id: str) -> str:
        return f"{self._config.key_prefix}metadata:{thread_id}"

    def threads_key(self, user_id: str) -> str:
        return f"{self._config.key_prefix}threads:{user_id}"

    # ── Parsing ─────────────────────────────────────────────────────────────

    @staticmethod
    def _parse_record(payload: str) -> CheckpointRecord:
        try:
            return CheckpointRecord.model_validate_json(payload)
        except pydantic.ValidationError as exc:
            raise SerializationError(f"malformed checkpoint payload: {exc}") from exc

    @staticmethod
    def _parse_metadata(payload: str) -> ThreadMetadata:
        try:
            return ThreadMetadata.model_validate_json(payload)
        except pydantic.ValidationError as exc:
            raise SerializationError(f"malformed thread metadata: {exc}") from exc

    async def _sliding_ttl(self, key: str, ttl: int) -> int:
        """Never shorten a key's remaining TTL when refreshing it."""
        remaining = await self._client.ttl(key)
        return max(ttl, remaining)

    # ── CheckpointStore ─────────────────────────────────────────────────────

    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        state: ConversationState,
        metadata: Optional[dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        ttl = resolve_ttl(ttl_seconds, self._config.ttl_seconds)
        index_key = self.index_key(thread_id)
        now = self._clock()

        with _redis_errors("save"):
            latest = await self._client.zrevrange(index_key, 0, 0, withscores=True)
            created_at = max(now, int(latest[0][1]) + 1) if latest else now
            exists = await self._client.zscore(index_key, checkpoint_id) is not None
            count = await self._client.zcard(index_key) + (0 if exists else 1)
            previous = await self.get_thread_metadata(thread_id)
            index_ttl = await self._sliding_ttl(index_key, ttl)

            record = CheckpointRecord(
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
                state=state,
                metadata=dict(metadata or {}),
                created_at=created_at,
                expires_at=now + ttl * 1000,
            )
            thread_meta = build_thread_metadata(previous, thread_id, checkpoint_id, state, count, now)
            threads_key = self.threads_key(thread_meta.user_id)

            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self.checkpoint_key(thread_id, checkpoint_id), record.model_dump_json(), ex=ttl)
                pipe.zadd(index_key, {checkpoint_id: created_at})
                pipe.expire(index_key, index_ttl)
                pipe.set(self.metadata_key(thread_id), thread_meta.model_dump_json(), ex=index_ttl)
                pipe.sadd(threads_key, thread_id)
                pipe.expire(threads_key, index_ttl)
                await pipe.execute()

        logger.debug("[redis_store] Saved %s/%s (ttl=%ss)", thread_id, checkpoint_id, ttl)

    async def get_record(
        self, thread_id: str, checkpoint_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        index_key = self.index_key(thread_id)
        with _redis_errors("load"):
            if checkpoint_id is not None:
                payload = await self._client.get(self.checkpoint_key(thread_id, checkpoint_id))
                if payload is None:
                    await self._client.zrem(index_key, checkpoint_id)
                    return None
                return self._parse_record(payload)

            for candidate in await self._client.zrevrange(index_key, 0, -1):
                payload = await self._client.get(self.checkpoint_key(thread_id, candidate))
                if payload is not None:
                    return self._parse_record(payload)
                await self._client.zrem(index_key, candidate)
        return None

    async def _existing(self, thread_id: str, checkpoint_ids: list[str]) -> list[str]:
        """Filter to ids whose checkpoint key still exists; prune the rest."""
        if not checkpoint_ids:
            return []
        async with self._client.pipeline(transaction=False) as pipe:
            for checkpoint_id in checkpoint_ids:
                pipe.exists(self.checkpoint_key(thread_id, checkpoint_id))
            flags = await pipe.execute()
        dangling = [cid for cid, flag in zip(checkpoint_ids, flags) if not flag]
        if dangling:
            await self._client.zrem(self.index_key(thread_id), *dangling)
        return [cid for cid, flag in zip(checkpoint_ids, flags) if flag]

    async def list(
        self, thread_id: str, limit: int = DEFAULT_LIST_LIMIT, before: Optional[str] = None,
    ) -> list[str]:
        index_key = self.index_key(thread_id)
        with _redis_errors("list"):
            if before is None:
                candidates = await self._client.zrevrange(index_key, 0, -1)
            else:
                score = await self._client.zscore(index_key, before)
                if score is None:
                    return []
                candidates = await self._client.zrevrangebyscore(index_key, f"({int(score)}", "-inf")
            live = await self._existing(thread_id, list(candidates))
        return live[:limit]

    async def _refresh_count(self, thread_id: str) -> None:
        meta = await self.get_thread_metadata(thread_id)
        if meta is None:
            return
        remaining = await self._client.zcard(self.index_key(thread_id))
        if remaining == 0:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self.metadata_key(thread_id), self.index_key(thread_id))
                pipe.srem(self.threads_key(meta.user_id), thread_id)
                await pipe.execute()
            return
        ttl = await self._client.ttl(self.metadata_key(thread_id))
        updated = meta.model_copy(update={"checkpoint_count": remaining})
        await self._client.set(
            self.metadata_key(thread_id), updated.model_dump_json(), ex=ttl if ttl > 0 else None,
        )

    async def delete(self, thread_id: str, checkpoint_id: str) -> bool:
        with _redis_errors("delete"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(self.checkpoint_key(thread_id, checkpoint_id))
                pipe.zrem(self.index_key(thread_id), checkpoint_id)
                deleted, _ = await pipe.execute()
            await self._refresh_count(thread_id)
        return deleted > 0

    async def delete_thread(self, thread_id: str) -> int:
        with _redis_errors("delete_thread"):
            checkpoint_ids = await self._client.zrange(self.index_key(thread_id), 0, -1)
            meta = await self.get_thread_metadata(thread_id)
            keys = [self.checkpoint_key(thread_id, cid) for cid in checkpoint_ids]
            async with self._client.pipeline(transaction=True) as pipe:
                if keys:
                    pipe.delete(*keys)
                pipe.delete(self.index_key(thread_id), self.metadata_key(thread_id))
                if meta is not None:
                    pipe.srem(self.threads_key(meta.user_id), thread_id)
                results = await pipe.execute()
        deleted = results[0] if keys else 0
        logger.info("[redis_store] Deleted thread %s (%d checkpoints)", thread_id, deleted)
        return deleted

    async def extend_ttl(self, thread_id: str, additional_seconds: int) -> int:
        if additional_seconds <= 0:
            raise ValueError("additional_seconds must be positive")
        updated = 0
        with _redis_errors("extend_ttl"):
            checkpoint_ids = await self._client.zrange(self.index_key(thread_id), 0, -1)
            longest = 0
            for checkpoint_id in checkpoint_ids:
                key = self.checkpoint_key(thread_id, checkpoint_id)
                remaining = await self._client.ttl(key)
                payload = await self._client.get(key)
                if remaining <= 0 or payload is None:
                    continue
                record = self._parse_record(payload)
                new_ttl = remaining + additional_seconds
                record = record.model_copy(update={
                    "expires_at": (record.expires_at or self._clock()) + additional_seconds * 1000,
                })
                await self._client.set(key, record.model_dump_json(), ex=new_ttl)
                longest = max(longest, new_ttl)
                updated += 1
            if longest:
                for key in (self.index_key(thread_id), self.metadata_key(thread_id)):
                    await self._client.expire(key, await self._sliding_ttl(key, longest))
        return updated

    async def cleanup_expired(
        self, thread_id: str, max_age_ms: int = DEFAULT_CLEANUP_MAX_AGE_MS,
    ) -> int:
        cutoff = self._clock() - max_age_ms
        index_key = self.index_key(thread_id)
        with _redis_errors("cleanup_expired"):
            stale = await self._client.zrangebyscore(index_key, "-inf", cutoff)
            if not stale:
                return 0
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.delete(*[self.checkpoint_key(thread_id, cid) for cid in stale])
                pipe.zrem(index_key, *stale)
                await pipe.execute()
            await self._refresh_count(thread_id)
        logger.info("[redis_store] Cleaned up %d checkpoints for %s", len(stale), thread_id)
        return len(stale)

    async def get_thread_metadata(self, thread_id: str) -> Optional[ThreadMetadata]:
        with _redis_errors("get_thread_metadata"):
            payload = await self._client.get(self.metadata_key(thread_id))
        return self._parse_metadata(payload) if payload is not None else None

    async def list_threads(self, user_id: Optional[str] = None) -> list[ThreadMetadata]:
        with _redis_errors("list_threads"):
            if user_id is not None:
                thread_ids = sorted(await self._client.smembers(self.threads_key(user_id)))
            else:
                prefix = self.metadata_key("")
                thread_ids = [
                    key[len(prefix):]
                    async for key in self._client.scan_iter(match=f"{prefix}*")
                ]
            if not thread_ids:
                return []
            payloads = await self._client.mget([self.metadata_key(t) for t in thread_ids])
            threads = []
            for thread_id, payload in zip(thread_ids, payloads):
                if payload is None:
                    if user_id is not None:
                        await self._client.srem(self.threads_key(user_id), thread_id)
                    continue
                threads.append(self._parse_metadata(payload))
        return sorted(threads, key=lambda m: m.last_accessed, reverse=True)

    async def ping(self) -> float:
        started = time.perf_counter()
        with _redis_errors("ping"):
            await call_with_timeout(self._client.ping(), self._config.probe_timeout, "redis")
        return (time.perf_counter() - started) * 1000

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as exc:
            logger.warning("[redis_store] Error closing Redis client: %s", exc)
