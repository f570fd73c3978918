# tests/test_storage.py
import asyncio
import json

import pytest

from assistant.providers.mock_provider import MockProvider
from assistant.sanitize import sanitize_input
from assistant.storage import InMemoryConversationLog, JsonFileKeyValueStore


# -------------------------
# Sanitize
# -------------------------

@pytest.mark.parametrize("raw, expected", [
    ("  hello  ", "hello"),
    ("a\x00b\x07c", "abc"),
    ("line1\nline2\ttab", "line1\nline2\ttab"),
    (None, ""),
    (123, ""),
])
def test_sanitize_input(raw, expected):
    assert sanitize_input(raw) == expected


def test_sanitize_truncates_and_is_idempotent():
    text = "word " * 2000
    once = sanitize_input(text, max_chars=100)
    assert len(once) <= 100
    assert sanitize_input(once, max_chars=100) == once


# -------------------------
# Key-value store
# -------------------------

def test_json_file_store_persists(tmp_path):
    path = tmp_path / "cache" / "store.json"
    store = JsonFileKeyValueStore(str(path))
    store.set("examprep_ai_cache_responses_a", "1")
    store.set("examprep_ai_cache_stats", "2")
    store.set("other", "3")
    assert not path.exists()
    store.flush()

    reopened = JsonFileKeyValueStore(str(path))
    assert reopened.get("other") == "3"
    assert sorted(reopened.keys("examprep_ai_cache_")) == ["examprep_ai_cache_responses_a", "examprep_ai_cache_stats"]

    reopened.delete("other")
    reopened.flush()
    assert json.loads(path.read_text(encoding="utf-8")).get("other") is None


def test_json_file_store_starts_empty_on_unreadable_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{broken", encoding="utf-8")

    store = JsonFileKeyValueStore(str(path))
    assert len(store) == 0
    store.set("k", "v")
    store.flush()
    assert JsonFileKeyValueStore(str(path)).get("k") == "v"


# -------------------------
# Conversation log
# -------------------------

def test_conversation_log_round_trip():
    log = InMemoryConversationLog()

    async def run():
        cid = await log.create_conversation({"mode": "essay"})
        await log.add_message(cid, {"role": "user", "content": "Evaluate my essay on water scarcity"})
        await log.add_message(cid, {"role": "assistant", "content": "Good structure."})
        return cid, await log.load_conversation(cid)

    cid, conv = asyncio.run(run())

    assert cid.startswith("conv_")
    assert conv["mode"] == "essay"
    assert conv["title"] == "Evaluate my essay on water scarcity"
    assert [m["role"] for m in conv["messages"]] == ["user", "assistant"]
    assert log.list_conversations()[0]["id"] == cid


def test_conversation_log_rejects_unknown_id():
    log = InMemoryConversationLog()
    with pytest.raises(KeyError):
        asyncio.run(log.add_message("missing", {"role": "user", "content": "hi"}))


def test_conversation_log_honours_given_id():
    log = InMemoryConversationLog()
    cid = asyncio.run(log.create_conversation({"id": "conv_fixed"}))
    assert cid == "conv_fixed"


# -------------------------
# Mock provider
# -------------------------

def test_mock_provider_is_deterministic():
    mock = MockProvider()
    assert mock.generate_text("Tell me something") == mock.generate_text("Tell me something")


def test_mock_provider_contextual_answers():
    mock = MockProvider()
    assert mock.generate_text("What are fundamental rights?").startswith("FUNDAMENTAL RIGHTS")
    assert mock.generate_text("explain federalism", "news").endswith(
        "Current relevance: track recent policies and court judgments on this topic."
    )


def test_mock_provider_generator_topics():
    mock = MockProvider()
    assert mock.generate_text("Generate MCQs on Indian rivers", "mcq_generator").startswith(
        "MCQ QUESTIONS ON INDIAN RIVERS"
    )


def test_mock_provider_speaks_gemini_shape():
    mock = MockProvider()
    payload = {"contents": [{"parts": [{"text": "System text\n\nExplain federalism"}]}]}

    reply = asyncio.run(mock.post_json("http://unused", payload))

    assert reply.status == 200
    assert reply.body["candidates"][0]["content"]["parts"][0]["text"].startswith("FEDERALISM")
    assert reply.body["usageMetadata"]["totalTokenCount"] > 0


def test_mock_fallback_envelope():
    envelope = MockProvider().respond("Explain the constitution", "essay")
    assert envelope.text.startswith("CONSTITUTION")
    assert envelope.raw == {"mock": True, "mode": "essay"}
