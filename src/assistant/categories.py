# src/assistant/categories.py
#
# 快取分類（category）：每個分類有自己的 TTL 與優先權（1 = 最重要，最後才被淘汰）
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional


MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


class CacheCategory(str, Enum):
    COMMON_QUERIES = "common_queries"
    MCQ_EXPLANATIONS = "mcq_explanations"
    NEWS_SUMMARIES = "news_summaries"
    ESSAY_FEEDBACK = "essay_feedback"
    CONVERSATION_CONTEXT = "conversation_context"


@dataclass(frozen=True)
class CategoryPolicy:
    ttl: float      # 秒
    priority: int


CATEGORY_POLICIES: Dict[CacheCategory, CategoryPolicy] = {
    CacheCategory.COMMON_QUERIES: CategoryPolicy(ttl=24 * HOUR, priority=1),
    CacheCategory.MCQ_EXPLANATIONS: CategoryPolicy(ttl=7 * DAY, priority=2),
    CacheCategory.NEWS_SUMMARIES: CategoryPolicy(ttl=1 * HOUR, priority=3),
    CacheCategory.ESSAY_FEEDBACK: CategoryPolicy(ttl=12 * HOUR, priority=2),
    CacheCategory.CONVERSATION_CONTEXT: CategoryPolicy(ttl=30 * MINUTE, priority=1),
}


def resolve_policies(ttl_overrides: Optional[Mapping[str, float]] = None) -> Dict[CacheCategory, CategoryPolicy]:
    """預設表 + 設定檔的 TTL 覆寫（key 為分類名稱，值為秒）；優先權不可覆寫。"""
    policies = dict(CATEGORY_POLICIES)
    for name, ttl in (ttl_overrides or {}).items():
        try:
            category = CacheCategory(name)
        except ValueError:
            raise RuntimeError(f"Unknown cache category in ttl_per_category: {name!r}") from None
        if ttl <= 0:
            raise RuntimeError(f"ttl_per_category.{name} must be > 0")
        policies[category] = CategoryPolicy(ttl=float(ttl), priority=policies[category].priority)
    return policies


# 依序比對，先中先贏
_KEYWORDS = (
    (("news", "current affairs"), CacheCategory.NEWS_SUMMARIES),
    (("mcq", "multiple choice"), CacheCategory.MCQ_EXPLANATIONS),
    (("essay", "write about"), CacheCategory.ESSAY_FEEDBACK),
)


def infer_category(text: str) -> CacheCategory:
    """general 模式下，用關鍵字猜分類。"""
    lowered = (text or "").lower()
    for keywords, category in _KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return CacheCategory.COMMON_QUERIES
