# src/assistant/schemas/cache.py
#
# Pydantic：快取在 KV store 裡的持久化格式
# - 寫入：model_dump_json()
# - 讀取：model_validate_json()，失敗（ValidationError / JSON 壞掉）視為損毀記錄

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


# -----------------------
# Response entries
# -----------------------

class CacheEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fingerprint: str
    category: str
    priority: int = Field(ge=1, description="1 = 最高優先，最後才淘汰")
    mode: str = ""
    prompt_preview: str = Field(default="", description="prompt 前 100 字，供 pattern 失效比對")
    created_at: float
    expires_at: float = Field(description="created_at + category.ttl，命中時不延長")
    last_accessed_at: float
    access_count: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    size_bytes: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# -----------------------
# Conversation context
# -----------------------

class ConversationContextSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str
    recent_history: List[Dict[str, Any]] = Field(default_factory=list)
    cached_at: float = 0.0


class ContextRecord(BaseModel):
    """snapshot + 與回應快取相同的過期/淘汰欄位"""
    model_config = ConfigDict(extra="forbid")

    snapshot: ConversationContextSnapshot
    priority: int = 1
    created_at: float
    expires_at: float
    last_accessed_at: float
    access_count: int = 0
    size_bytes: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# -----------------------
# Statistics
# -----------------------

class CacheStatsRecord(BaseModel):
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    total_lookups: int = 0
    last_cleanup: float = 0.0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total_lookups if self.total_lookups else 0.0
