# tests/test_cache.py
import pytest

from assistant.cache import ResponseCache, fingerprint, normalize_prompt
from assistant.categories import CacheCategory, infer_category
from assistant.storage import InMemoryKeyValueStore, JsonFileKeyValueStore

MINUTE = 60
HOUR = 3600
DAY = 24 * HOUR


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def cache(store, clock):
    return ResponseCache(store, clock=clock)


def _payload(text="answer"):
    return {"content": text, "usage": {"total_units": 3}}


# -------------------------
# Fingerprint
# -------------------------

def test_fingerprint_ignores_whitespace_and_case():
    a = fingerprint("general", "What is Article 21?", 0.7, 1024)
    b = fingerprint("general", "  what   IS article\n21?  ", 0.7, 1024)
    assert a == b
    assert len(a) == 64


def test_fingerprint_depends_on_mode_and_parameters():
    base = fingerprint("general", "q", 0.7, 1024)
    assert fingerprint("mcq", "q", 0.7, 1024) != base
    assert fingerprint("general", "q", 0.3, 1024) != base
    assert fingerprint("general", "q", 0.7, 512) != base


def test_fingerprint_defaults():
    assert fingerprint("general", "q") == fingerprint("general", "q", 0.7, 2048)
    assert normalize_prompt("  A \t B  ") == "a b"


# -------------------------
# TTL
# -------------------------

def test_news_entry_hits_at_59_minutes_and_misses_at_61(cache, clock):
    cache.store("fp-news", CacheCategory.NEWS_SUMMARIES, _payload("budget analysis"))

    clock.advance(59 * MINUTE)
    hit = cache.lookup("fp-news")
    assert hit is not None
    assert hit.from_cache is True
    assert hit.payload["content"] == "budget analysis"

    # 命中不延長 TTL
    clock.advance(2 * MINUTE)
    assert cache.lookup("fp-news") is None
    assert cache.entry_count() == 0


def test_hit_updates_access_metadata(cache, clock, store):
    cache.store("fp", "common_queries", _payload())
    clock.advance(10)
    cache.lookup("fp")
    hit = cache.lookup("fp")
    assert hit.access_count == 2
    assert hit.category == "common_queries"


def test_ttl_overrides(store, clock):
    cache = ResponseCache(store, clock=clock, ttl_overrides={"news_summaries": 10 * MINUTE})
    cache.store("fp", "news_summaries", _payload())
    clock.advance(11 * MINUTE)
    assert cache.lookup("fp") is None


def test_unknown_ttl_override_is_rejected(store, clock):
    with pytest.raises(RuntimeError):
        ResponseCache(store, clock=clock, ttl_overrides={"sports": 60})


# -------------------------
# Eviction
# -------------------------

def test_eviction_prefers_low_priority_and_least_recently_used(store, clock):
    cache = ResponseCache(store, clock=clock, max_entries=1000, ttl_overrides={"common_queries": 30 * DAY})

    cache.store("old-priority-1", "common_queries", _payload())
    clock.advance(7 * DAY)

    cache.store("news-accessed-once", "news_summaries", _payload())
    cache.lookup("news-accessed-once")

    for i in range(998):
        clock.advance(1)
        cache.store(f"mcq-{i}", "mcq_explanations", _payload())

    assert cache.entry_count() == 1000

    cache.store("newcomer", "common_queries", _payload())

    assert cache.evictions == 100
    assert cache.entry_count() == 901
    assert cache.lookup("old-priority-1") is not None
    assert cache.lookup("news-accessed-once") is None
    assert cache.lookup("newcomer") is not None
    # 同優先權內最舊的先淘汰
    assert cache.lookup("mcq-0") is None
    assert cache.lookup("mcq-98") is None
    assert cache.lookup("mcq-99") is not None


def test_eviction_removes_at_least_one(store, clock):
    cache = ResponseCache(store, clock=clock, max_entries=3)
    for i in range(3):
        cache.store(f"fp-{i}", "common_queries", _payload())
        clock.advance(1)

    cache.store("fp-3", "common_queries", _payload())
    assert cache.evictions == 1
    assert cache.entry_count() == 3
    assert cache.lookup("fp-0") is None


def test_overwriting_existing_key_does_not_evict(store, clock):
    cache = ResponseCache(store, clock=clock, max_entries=2)
    cache.store("a", "common_queries", _payload())
    cache.store("b", "common_queries", _payload())
    cache.store("a", "common_queries", _payload("new"))
    assert cache.evictions == 0
    assert cache.lookup("a").payload["content"] == "new"


# -------------------------
# Invalidation
# -------------------------

def test_invalidate_by_category_counts_exactly(cache):
    for i in range(3):
        cache.store(f"news-{i}", "news_summaries", _payload())
    for i in range(2):
        cache.store(f"mcq-{i}", "mcq_explanations", _payload())
    cache.store("common", "common_queries", _payload())

    assert cache.invalidate(category="news_summaries") == 3
    assert cache.entry_count() == 3
    assert cache.lookup("mcq-0") is not None
    assert cache.lookup("common") is not None


def test_invalidate_criteria_are_ored(cache, clock):
    cache.store("a", "common_queries", _payload(), mode="general", prompt="Explain the Preamble")
    clock.advance(100)
    cache.store("b", "mcq_explanations", _payload(), mode="mcq", prompt="Which article...")
    cache.store("c", "essay_feedback", _payload(), mode="essay", prompt="My essay on climate")

    removed = cache.invalidate(mode="mcq", pattern="preamble")
    assert removed == 2
    assert cache.lookup("c") is not None


def test_invalidate_older_than(cache, clock):
    cache.store("old", "common_queries", _payload())
    clock.advance(100)
    cutoff = clock.now()
    cache.store("new", "common_queries", _payload())

    assert cache.invalidate(older_than=cutoff) == 1
    assert cache.lookup("new") is not None


def test_invalidate_without_criteria_removes_nothing(cache):
    cache.store("a", "common_queries", _payload())
    assert cache.invalidate() == 0
    assert cache.entry_count() == 1


# -------------------------
# Corruption / persistence
# -------------------------

def test_corrupted_entry_is_a_miss_and_dropped(cache, store):
    key = cache._response_prefix + "broken"
    store.set(key, "{not json")

    assert cache.lookup("broken") is None
    assert store.get(key) is None
    assert cache.misses == 1


def test_entry_with_wrong_shape_is_dropped(cache, store):
    key = cache._response_prefix + "wrong"
    store.set(key, '{"fingerprint": "wrong"}')
    assert cache.lookup("wrong") is None
    assert store.get(key) is None


def test_entries_and_stats_survive_restart(store, clock):
    first = ResponseCache(store, clock=clock)
    first.store("fp", "mcq_explanations", _payload("kept"))
    first.lookup("fp")

    second = ResponseCache(store, clock=clock)
    assert second.hits == 1
    assert second.lookup("fp").payload["content"] == "kept"


class CountingFileStore(JsonFileKeyValueStore):
    def __init__(self, path):
        super().__init__(path)
        self.writes = 0

    def _write(self):
        self.writes += 1
        super()._write()


def test_lookups_do_not_rewrite_the_file_until_flush(tmp_path, clock):
    path = tmp_path / "cache.json"
    kv = CountingFileStore(str(path))
    cache = ResponseCache(kv, clock=clock)
    cache.store("fp", "mcq_explanations", _payload("kept"))
    writes = kv.writes

    assert cache.lookup("fp") is not None
    assert cache.lookup("missing") is None
    assert kv.writes == writes

    cache.flush()
    assert kv.writes == writes + 1
    cache.flush()
    assert kv.writes == writes + 1

    reopened = ResponseCache(JsonFileKeyValueStore(str(path)), clock=clock)
    assert reopened.hits == 1
    assert reopened.lookup("fp").access_count == 2


def test_expired_entries_are_swept_on_startup(store, clock):
    first = ResponseCache(store, clock=clock)
    first.store("fp", "news_summaries", _payload())
    clock.advance(2 * HOUR)

    second = ResponseCache(store, clock=clock)
    assert second.entry_count() == 0
    assert second.last_cleanup == clock.now()


# -------------------------
# Sweep / context / stats
# -------------------------

def test_sweep_covers_both_namespaces(cache, clock):
    cache.store("news", "news_summaries", _payload())
    cache.store("mcq", "mcq_explanations", _payload())
    cache.cache_context("conv-1", [{"role": "user", "content": "hi"}])

    clock.advance(2 * HOUR)
    assert cache.sweep() == 2
    assert cache.entry_count() == 1
    assert cache.context_count() == 0
    assert cache.last_cleanup == clock.now()


def test_context_round_trip_and_expiry(cache, clock):
    history = [{"role": "user", "content": "What is federalism?"}, {"role": "assistant", "content": "..."}]
    cache.cache_context("conv-1", history)

    snapshot = cache.get_context("conv-1")
    assert snapshot.conversation_id == "conv-1"
    assert snapshot.recent_history == history

    clock.advance(31 * MINUTE)
    assert cache.get_context("conv-1") is None


def test_context_namespace_has_its_own_capacity(store, clock):
    cache = ResponseCache(store, clock=clock, max_context_entries=2)
    for i in range(3):
        cache.cache_context(f"conv-{i}", [])
        clock.advance(1)

    assert cache.context_count() == 2
    assert cache.get_context("conv-0") is None
    assert cache.entry_count() == 0


def test_stats_and_hit_rate(cache):
    assert cache.hit_rate == 0.0

    cache.store("fp", "news_summaries", _payload())
    cache.lookup("fp")
    cache.lookup("missing")

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["total_lookups"] == 2
    assert stats["hit_rate"] == 0.5
    assert stats["entries"] == 1
    assert stats["categories"]["news_summaries"]["count"] == 1
    assert stats["total_size_bytes"] > 0


def test_clear_drops_everything(cache):
    cache.store("fp", "common_queries", _payload())
    cache.cache_context("conv", [])
    cache.lookup("fp")

    cache.clear()

    assert cache.entry_count() == 0
    assert cache.context_count() == 0
    assert cache.hits == 0
    assert cache.total_lookups == 0


# -------------------------
# Category inference
# -------------------------

@pytest.mark.parametrize("text, category", [
    ("Summarise today's news on inflation", CacheCategory.NEWS_SUMMARIES),
    ("current affairs for March", CacheCategory.NEWS_SUMMARIES),
    ("Explain this MCQ", CacheCategory.MCQ_EXPLANATIONS),
    ("a multiple choice question on rivers", CacheCategory.MCQ_EXPLANATIONS),
    ("Write about climate change", CacheCategory.ESSAY_FEEDBACK),
    ("What is Article 21?", CacheCategory.COMMON_QUERIES),
])
def test_infer_category(text, category):
    assert infer_category(text) == category
