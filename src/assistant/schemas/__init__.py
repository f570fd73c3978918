from .cache import CacheEntry, CacheStatsRecord, ContextRecord, ConversationContextSnapshot

__all__ = ["CacheEntry", "CacheStatsRecord", "ContextRecord", "ConversationContextSnapshot"]
