"""
In-Memory Checkpoint Store
==========================
CheckpointStore for processes without Redis. Lost on process exit.

Same semantics as the Redis store, enforced locally:
  - every record is stored as its JSON payload with an absolute expires_at
    computed at write time; reads treat expired records as absent and prune them
  - created_at is strictly increasing per thread
  - once more than ``max_entries`` records are held, the oldest (by created_at,
    across all threads) are evicted

The clock is injectable so tests can move time without sleeping.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import pydantic

from .checkpointing import (
    DEFAULT_CLEANUP_MAX_AGE_MS,
    DEFAULT_LIST_LIMIT,
    DEFAULT_MEMORY_MAX_ENTRIES,
    DEFAULT_TTL_SECONDS,
    CheckpointStore,
    build_thread_metadata,
    resolve_ttl,
)
from .errors import SerializationError
from .state import CheckpointRecord, ConversationState, ThreadMetadata, now_ms

logger = logging.getLogger(__name__)


class MemoryCheckpointStore(CheckpointStore):
    backend = "memory"

    def __init__(
        self,
        max_entries: int = DEFAULT_MEMORY_MAX_ENTRIES,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        # (thread_id, checkpoint_id) → (payload, created_at, expires_at)
        self._records: dict[tuple[str, str], tuple[str, int, int]] = {}
        # thread_id → {checkpoint_id: created_at}
        self._index: dict[str, dict[str, int]] = {}
        self._threads: dict[str, ThreadMetadata] = {}

    def __len__(self) -> int:
        return len(self._records)

    # ── Internal helpers ────────────────────────────────────────────────────

    def _expired(self, expires_at: int) -> bool:
        return self._clock() >= expires_at

    def _drop(self, thread_id: str, checkpoint_id: str) -> bool:
        removed = self._records.pop((thread_id, checkpoint_id), None) is not None
        index = self._index.get(thread_id)
        if index is not None:
            index.pop(checkpoint_id, None)
            if not index:
                self._index.pop(thread_id, None)
                self._threads.pop(thread_id, None)
            elif thread_id in self._threads:
                self._threads[thread_id] = self._threads[thread_id].model_copy(
                    update={"checkpoint_count": len(index)},
                )
        return removed

    def _live_ids(self, thread_id: str) -> list[str]:
        """Checkpoint ids for the thread, newest first, pruning expired ones."""
        index = self._index.get(thread_id, {})
        live = []
        for checkpoint_id, _ in sorted(index.items(), key=lambda item: item[1], reverse=True):
            _, _, expires_at = self._records[(thread_id, checkpoint_id)]
            if self._expired(expires_at):
                self._drop(thread_id, checkpoint_id)
            else:
                live.append(checkpoint_id)
        return live

    def _evict_overflow(self) -> None:
        while len(self._records) > self.max_entries:
            key = min(self._records, key=lambda k: self._records[k][1])
            logger.info("[memory_store] Evicting oldest checkpoint %s/%s", *key)
            self._drop(*key)

    @staticmethod
    def _parse(payload: str) -> CheckpointRecord:
        try:
            return CheckpointRecord.model_validate_json(payload)
        except pydantic.ValidationError as exc:
            raise SerializationError(f"malformed checkpoint payload: {exc}") from exc

    # ── CheckpointStore ─────────────────────────────────────────────────────

    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        state: ConversationState,
        metadata: Optional[dict[str, Any]] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        ttl = resolve_ttl(ttl_seconds, self.default_ttl_seconds)
        now = self._clock()
        index = self._index.setdefault(thread_id, {})
        latest = max(index.values(), default=None)
        created_at = now if latest is None else max(now, latest + 1)
        expires_at = now + ttl * 1000

        record = CheckpointRecord(
            thread_id=thread_id,
            checkpoint_id=checkpoint_id,
            state=state,
            metadata=dict(metadata or {}),
            created_at=created_at,
            expires_at=expires_at,
        )
        self._records[(thread_id, checkpoint_id)] = (record.model_dump_json(), created_at, expires_at)
        index[checkpoint_id] = created_at
        self._threads[thread_id] = build_thread_metadata(
            self._threads.get(thread_id), thread_id, checkpoint_id, state, len(index), now,
        )
        self._evict_overflow()

    async def get_record(
        self, thread_id: str, checkpoint_id: Optional[str] = None,
    ) -> Optional[CheckpointRecord]:
        if checkpoint_id is None:
            live = self._live_ids(thread_id)
            if not live:
                return None
            checkpoint_id = live[0]

        entry = self._records.get((thread_id, checkpoint_id))
        if entry is None:
            return None
        payload, _, expires_at = entry
        if self._expired(expires_at):
            self._drop(thread_id, checkpoint_id)
            return None
        return self._parse(payload)

    async def list(
        self, thread_id: str, limit: int = DEFAULT_LIST_LIMIT, before: Optional[str] = None,
    ) -> list[str]:
        live = self._live_ids(thread_id)
        if before is not None:
            if before not in live:
                return []
            live = live[live.index(before) + 1:]
        return live[:limit]

    async def delete(self, thread_id: str, checkpoint_id: str) -> bool:
        return self._drop(thread_id, checkpoint_id)

    async def delete_thread(self, thread_id: str) -> int:
        live = self._live_ids(thread_id)
        for checkpoint_id in self._index.pop(thread_id, {}):
            self._records.pop((thread_id, checkpoint_id), None)
        self._threads.pop(thread_id, None)
        return len(live)

    async def extend_ttl(self, thread_id: str, additional_seconds: int) -> int:
        if additional_seconds <= 0:
            raise ValueError("additional_seconds must be positive")
        updated = 0
        for checkpoint_id in self._live_ids(thread_id):
            key = (thread_id, checkpoint_id)
            payload, created_at, expires_at = self._records[key]
            record = self._parse(payload)
            new_expiry = expires_at + additional_seconds * 1000
            record = record.model_copy(update={"expires_at": new_expiry})
            self._records[key] = (record.model_dump_json(), created_at, new_expiry)
            updated += 1
        return updated

    async def cleanup_expired(
        self, thread_id: str, max_age_ms: int = DEFAULT_CLEANUP_MAX_AGE_MS,
    ) -> int:
        cutoff = self._clock() - max_age_ms
        stale = [
            checkpoint_id
            for checkpoint_id, created_at in self._index.get(thread_id, {}).items()
            if created_at <= cutoff
        ]
        for checkpoint_id in stale:
            self._drop(thread_id, checkpoint_id)
        return len(stale)

    async def get_thread_metadata(self, thread_id: str) -> Optional[ThreadMetadata]:
        if not self._live_ids(thread_id):
            return None
        return self._threads.get(thread_id)

    async def list_threads(self, user_id: Optional[str] = None) -> list[ThreadMetadata]:
        threads = []
        for thread_id in list(self._threads):
            meta = await self.get_thread_metadata(thread_id)
            if meta is None:
                continue
            if user_id is not None and meta.user_id != user_id:
                continue
            threads.append(meta)
        return sorted(threads, key=lambda m: m.last_accessed, reverse=True)

    async def ping(self) -> float:
        started = time.perf_counter()
        return (time.perf_counter() - started) * 1000
