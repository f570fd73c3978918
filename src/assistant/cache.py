# src/assistant/cache.py
#
# 回應快取（content-addressed）
#   快取 key：fingerprint = sha256(mode | normalized prompt | temperature | max tokens)
#   每個分類各自的 TTL / 優先權；容量滿了依 (優先權數字大者先、最久沒用者先) 淘汰 10%
#   另一個 namespace 存對話 context snapshot（key 為 conversation_id）
#   底層是 KeyValueStore，重啟後仍可讀回（記錄格式見 schemas/cache.py）
#
# 所有方法都是同步的（沒有 await），在 asyncio 下每次讀改寫都是原子的。
# lookup / get_context 的存取紀錄與統計只寫進 KV 的記憶體，不 flush；store、invalidate、sweep 等變更才 flush 落盤。

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .categories import CacheCategory, CategoryPolicy, resolve_policies
from .clock import Clock, SystemClock
from .schemas.cache import CacheEntry, CacheStatsRecord, ContextRecord, ConversationContextSnapshot
from .storage import InMemoryKeyValueStore, KeyValueStore
from . import observability as obs

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_TOKENS = 2048
EVICTION_FRACTION = 0.1
PROMPT_PREVIEW_CHARS = 100

_WS = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    return _WS.sub(" ", (prompt or "").strip().lower())


def fingerprint(
    mode: str,
    prompt: str,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
) -> str:
    temperature = DEFAULT_TEMPERATURE if temperature is None else temperature
    max_output_tokens = DEFAULT_MAX_OUTPUT_TOKENS if max_output_tokens is None else max_output_tokens
    material = f"{mode}|{normalize_prompt(prompt)}|{float(temperature):.2f}|{int(max_output_tokens)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class CachedResponse:
    fingerprint: str
    category: str
    payload: Dict[str, Any]
    created_at: float
    access_count: int
    from_cache: bool = True


class ResponseCache:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        clock: Optional[Clock] = None,
        max_entries: int = 1000,
        max_context_entries: int = 100,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        prefix: str = "examprep_ai_cache_",
        sweep_on_init: bool = True,
    ):
        self.kv: KeyValueStore = store if store is not None else InMemoryKeyValueStore()
        self.clock = clock or SystemClock()
        self.max_entries = max_entries
        self.max_context_entries = max_context_entries
        self.policies: Dict[CacheCategory, CategoryPolicy] = resolve_policies(ttl_overrides)

        self.prefix = prefix
        self._response_prefix = f"{prefix}responses_"
        self._context_prefix = f"{prefix}contexts_"
        self._stats_key = f"{prefix}stats"

        self._stats = self._load_stats()

        if sweep_on_init:
            self.sweep()

    # -------------------------
    # Response namespace
    # -------------------------

    def lookup(self, fp: str) -> Optional[CachedResponse]:
        self._stats.total_lookups += 1
        key = self._response_prefix + fp

        entry = self._load(key, CacheEntry)
        if entry is None:
            self._record_miss(fp, "absent")
            return None

        now = self.clock.now()
        if entry.is_expired(now):
            self.kv.delete(key)
            self._record_miss(fp, "expired")
            return None

        entry.last_accessed_at = now
        entry.access_count += 1
        self.kv.set(key, entry.model_dump_json())

        self._stats.hits += 1
        self._save_stats()
        obs.log_cache_hit(fp, entry.category, entry.access_count)

        return CachedResponse(
            fingerprint=fp,
            category=entry.category,
            payload=dict(entry.payload),
            created_at=entry.created_at,
            access_count=entry.access_count,
        )

    def store(
        self,
        fp: str,
        category: Union[CacheCategory, str],
        payload: Dict[str, Any],
        *,
        mode: str = "",
        prompt: str = "",
    ) -> CacheEntry:
        category = CacheCategory(category)
        policy = self.policies[category]
        key = self._response_prefix + fp

        existing = self.kv.keys(self._response_prefix)
        if key not in existing and len(existing) >= self.max_entries:
            self._evict(CacheEntry, existing, namespace="responses")

        now = self.clock.now()
        body = json.dumps(payload, ensure_ascii=False, default=str)
        entry = CacheEntry(
            fingerprint=fp,
            category=category.value,
            priority=policy.priority,
            mode=mode,
            prompt_preview=(prompt or "")[:PROMPT_PREVIEW_CHARS],
            created_at=now,
            expires_at=now + policy.ttl,
            last_accessed_at=now,
            access_count=0,
            payload=payload,
            size_bytes=len(body.encode("utf-8")),
        )
        self.kv.set(key, entry.model_dump_json())
        obs.log_cache_set(fp, category.value, policy.ttl)
        self.flush()
        return entry

    def invalidate(
        self,
        *,
        category: Optional[Union[CacheCategory, str]] = None,
        mode: Optional[str] = None,
        pattern: Optional[str] = None,
        older_than: Optional[float] = None,
    ) -> int:
        """
        任一條件成立即刪除（OR）；都沒給則不刪任何東西。
        older_than：epoch 秒，created_at 早於它的記錄
        回傳：刪除筆數
        """
        criteria = {
            "category": CacheCategory(category).value if category is not None else None,
            "mode": mode,
            "pattern": pattern,
            "older_than": older_than,
        }
        if all(v is None for v in criteria.values()):
            return 0

        needle = pattern.lower() if pattern else None
        removed = 0
        for key in self.kv.keys(self._response_prefix):
            entry = self._load(key, CacheEntry)
            if entry is None:
                continue
            if (
                (criteria["category"] is not None and entry.category == criteria["category"])
                or (mode is not None and entry.mode == mode)
                or (needle is not None and needle in entry.prompt_preview.lower())
                or (older_than is not None and entry.created_at < older_than)
            ):
                self.kv.delete(key)
                removed += 1

        obs.log_cache_invalidation({k: v for k, v in criteria.items() if v is not None}, removed)
        self.flush()
        return removed

    # -------------------------
    # Context namespace
    # -------------------------

    def cache_context(
        self,
        conversation_id: str,
        snapshot: Union[ConversationContextSnapshot, Sequence[Dict[str, Any]]],
    ) -> ConversationContextSnapshot:
        now = self.clock.now()
        if not isinstance(snapshot, ConversationContextSnapshot):
            snapshot = ConversationContextSnapshot(
                conversation_id=conversation_id,
                recent_history=[dict(item) for item in snapshot],
                cached_at=now,
            )

        key = self._context_prefix + conversation_id
        existing = self.kv.keys(self._context_prefix)
        if key not in existing and len(existing) >= self.max_context_entries:
            self._evict(ContextRecord, existing, namespace="contexts")

        policy = self.policies[CacheCategory.CONVERSATION_CONTEXT]
        body = snapshot.model_dump_json()
        record = ContextRecord(
            snapshot=snapshot,
            priority=policy.priority,
            created_at=now,
            expires_at=now + policy.ttl,
            last_accessed_at=now,
            size_bytes=len(body.encode("utf-8")),
        )
        self.kv.set(key, record.model_dump_json())
        self.flush()
        return snapshot

    def get_context(self, conversation_id: str) -> Optional[ConversationContextSnapshot]:
        key = self._context_prefix + conversation_id
        record = self._load(key, ContextRecord)
        if record is None:
            return None

        now = self.clock.now()
        if record.is_expired(now):
            self.kv.delete(key)
            return None

        record.last_accessed_at = now
        record.access_count += 1
        self.kv.set(key, record.model_dump_json())
        return record.snapshot

    def drop_context(self, conversation_id: str) -> None:
        self.kv.delete(self._context_prefix + conversation_id)
        self.flush()

    # -------------------------
    # Maintenance
    # -------------------------

    def sweep(self) -> int:
        """移除兩個 namespace 內所有過期（與損毀）的記錄。"""
        now = self.clock.now()
        removed = 0
        for prefix, model in ((self._response_prefix, CacheEntry), (self._context_prefix, ContextRecord)):
            for key in self.kv.keys(prefix):
                record = self._load(key, model)
                if record is None:
                    continue
                if record.is_expired(now):
                    self.kv.delete(key)
                    removed += 1

        self._stats.last_cleanup = now
        self._save_stats()
        self.flush()
        if removed:
            obs.log_cache_cleanup(removed)
        return removed

    def clear(self) -> None:
        for key in self.kv.keys(self.prefix):
            self.kv.delete(key)
        self._stats = CacheStatsRecord()
        self._save_stats()
        self.flush()
        obs.log_cache_clear()

    def flush(self) -> None:
        """把累積的存取紀錄與統計寫進底層 store。"""
        self.kv.flush()

    # -------------------------
    # Statistics
    # -------------------------

    @property
    def hits(self) -> int:
        return self._stats.hits

    @property
    def misses(self) -> int:
        return self._stats.misses

    @property
    def evictions(self) -> int:
        return self._stats.evictions

    @property
    def total_lookups(self) -> int:
        return self._stats.total_lookups

    @property
    def hit_rate(self) -> float:
        return self._stats.hit_rate

    @property
    def last_cleanup(self) -> float:
        return self._stats.last_cleanup

    def entry_count(self) -> int:
        return len(self.kv.keys(self._response_prefix))

    def context_count(self) -> int:
        return len(self.kv.keys(self._context_prefix))

    def stats(self) -> Dict[str, Any]:
        categories: Dict[str, Dict[str, int]] = {c.value: {"count": 0, "size_bytes": 0} for c in CacheCategory}
        total_size = 0
        entries = 0
        for key in self.kv.keys(self._response_prefix):
            entry = self._load(key, CacheEntry)
            if entry is None:
                continue
            entries += 1
            total_size += entry.size_bytes
            bucket = categories.setdefault(entry.category, {"count": 0, "size_bytes": 0})
            bucket["count"] += 1
            bucket["size_bytes"] += entry.size_bytes

        return {
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "evictions": self._stats.evictions,
            "total_lookups": self._stats.total_lookups,
            "hit_rate": round(self._stats.hit_rate, 4),
            "entries": entries,
            "context_entries": self.context_count(),
            "max_entries": self.max_entries,
            "utilization": round(entries / self.max_entries, 4) if self.max_entries else 0.0,
            "total_size_bytes": total_size,
            "categories": categories,
            "last_cleanup": self._stats.last_cleanup,
        }

    # -------------------------
    # Internal helpers
    # -------------------------

    def _load(self, key: str, model: Type[M]) -> Optional[M]:
        raw = self.kv.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except (ValidationError, ValueError):
            # 損毀記錄：丟掉，當作 miss
            logger.debug(f"Dropping corrupted cache record: {key}")
            self.kv.delete(key)
            return None

    def _evict(self, model: Type[BaseModel], keys: List[str], *, namespace: str) -> int:
        records: List[Tuple[str, Any]] = []
        for key in keys:
            record = self._load(key, model)
            if record is not None:
                records.append((key, record))

        if not records:
            return 0

        # 優先權數字大的先淘汰；同優先權時最久沒被用到的先淘汰
        sort_key: Callable[[Tuple[str, Any]], Tuple[int, float]] = lambda kr: (-kr[1].priority, kr[1].last_accessed_at)
        records.sort(key=sort_key)

        count = max(1, math.ceil(len(records) * EVICTION_FRACTION))
        for key, _ in records[:count]:
            self.kv.delete(key)

        self._stats.evictions += count
        self._save_stats()
        obs.log_cache_eviction(namespace, count, len(records) - count)
        return count

    def _record_miss(self, fp: str, reason: str) -> None:
        self._stats.misses += 1
        self._save_stats()
        obs.log_cache_miss(fp, reason)

    def _load_stats(self) -> CacheStatsRecord:
        raw = self.kv.get(self._stats_key)
        if raw is None:
            return CacheStatsRecord()
        try:
            return CacheStatsRecord.model_validate_json(raw)
        except (ValidationError, ValueError):
            self.kv.delete(self._stats_key)
            return CacheStatsRecord()

    def _save_stats(self) -> None:
        self.kv.set(self._stats_key, self._stats.model_dump_json())
