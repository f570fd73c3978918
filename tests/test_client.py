# tests/test_client.py
import asyncio
import base64
import logging

import pytest

from assistant.client import DEFAULT_SAFETY_SETTINGS, RequestClient, parse_image_data_url
from assistant.errors import AIAuthError, AIRateLimitError, AIRequestError, AIServerError, AIValidationError
from assistant.normalize import extract_text, extract_usage, validate_response
from assistant.rate_limiter import RateLimiter
from assistant.retry import RetryExecutor
from assistant.types import ProviderReply
from fakes import ScaledClock, StubTransport, gemini_body


PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode()


def make_client(transport, clock, **kwargs):
    return RequestClient(
        transport,
        api_key="test-key",
        model="gemini-1.5-flash",
        rate_limiter=RateLimiter(clock=clock),
        retry_executor=RetryExecutor(max_retries=3, base_delay=1.0, clock=clock, rng=lambda: 0.0),
        clock=clock,
        **kwargs,
    )


# -------------------------
# build_request
# -------------------------

def test_build_request_defaults(clock):
    client = make_client(StubTransport(), clock)
    body = client.build_request("Explain federalism")

    assert body["contents"] == [{"parts": [{"text": "Explain federalism"}]}]
    assert body["generationConfig"] == {"temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 4096}
    assert body["safetySettings"] == DEFAULT_SAFETY_SETTINGS
    assert {s["threshold"] for s in body["safetySettings"]} == {"BLOCK_MEDIUM_AND_ABOVE"}


def test_build_request_overrides(clock):
    client = make_client(StubTransport(), clock)
    body = client.build_request(
        "q",
        temperature=0.3,
        max_output_tokens=512,
        safety_settings=[],
        generation_config={"candidateCount": 1},
    )
    assert body["generationConfig"]["temperature"] == 0.3
    assert body["generationConfig"]["maxOutputTokens"] == 512
    assert body["generationConfig"]["topK"] == 40
    assert body["generationConfig"]["candidateCount"] == 1
    assert body["safetySettings"] == []


def test_build_request_attaches_inline_image(clock):
    client = make_client(StubTransport(), clock)
    body = client.build_request("Evaluate this answer", image=f"data:image/png;base64,{PNG_B64}")

    parts = body["contents"][0]["parts"]
    assert parts[0] == {"text": "Evaluate this answer"}
    assert parts[1] == {"inline_data": {"mime_type": "image/png", "data": PNG_B64}}


@pytest.mark.parametrize("image", [
    "not a data url",
    "data:image/png;base64,@@not-base64@@",
    "data:image/png,plain",
])
def test_malformed_image_is_skipped(clock, image):
    client = make_client(StubTransport(), clock)
    body = client.build_request("q", image=image)
    assert len(body["contents"][0]["parts"]) == 1


def test_parse_image_data_url():
    assert parse_image_data_url(f"data:image/jpeg;base64,{PNG_B64}") == {"mime_type": "image/jpeg", "data": PNG_B64}
    assert parse_image_data_url("data:;base64,AAAA") is None


# -------------------------
# Validation / extraction
# -------------------------

@pytest.mark.parametrize("data, reason", [
    ("text", "not an object"),
    ({"error": {"code": 400}}, "api returned error"),
    ({}, "no candidates array"),
    ({"candidates": []}, "empty candidates array"),
    ({"candidates": [{}]}, "no content in candidate"),
    ({"candidates": [{"content": {"parts": []}}]}, "empty parts array"),
    ({"candidates": [{"content": {"parts": [{"text": ""}]}}]}, "no text in first part"),
    ({"candidates": [{"content": {"role": "model"}}]}, "no parts array or text in content"),
])
def test_validate_response_rejects(data, reason):
    check = validate_response(data)
    assert not check.valid
    assert check.reason == reason


def test_extract_text_handles_both_shapes():
    assert extract_text(gemini_body("nested")) == "nested"
    assert extract_text({"candidates": [{"content": {"text": "flat"}}]}) == "flat"


def test_extract_text_raises_on_invalid():
    with pytest.raises(AIValidationError):
        extract_text({"candidates": []})


def test_extract_usage():
    usage = extract_usage(gemini_body(usage={"promptTokenCount": 12, "candidatesTokenCount": 30, "totalTokenCount": 42}))
    assert (usage.prompt_units, usage.output_units, usage.total_units) == (12, 30, 42)
    assert extract_usage(gemini_body()).total_units == 0


# -------------------------
# generate()
# -------------------------

def test_generate_posts_to_endpoint_with_key(clock):
    transport = StubTransport(ProviderReply(200, gemini_body("hello", usage={"totalTokenCount": 5})))
    client = make_client(transport, clock)

    envelope = asyncio.run(client.generate("hi", temperature=0.2))

    assert envelope.text == "hello"
    assert envelope.usage.total_units == 5
    assert transport.urls == [
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"
    ]
    assert transport.headers[0]["x-goog-api-key"] == "test-key"
    assert transport.payloads[0]["generationConfig"]["temperature"] == 0.2


def test_generate_retries_server_errors(clock):
    transport = StubTransport(
        ProviderReply(503, {"error": {"message": "unavailable"}}),
        ProviderReply(503, {"error": {"message": "unavailable"}}),
        ProviderReply(200, gemini_body("third time")),
    )
    client = make_client(transport, clock)

    envelope = asyncio.run(client.generate("q"))

    assert envelope.text == "third time"
    assert transport.calls == 3
    # 每次嘗試都要過限流
    assert client.rate_limiter.calls_in_window == 3


def test_generate_auth_error_fails_immediately(clock):
    transport = StubTransport(ProviderReply(401, {"error": {"message": "bad key"}}))
    client = make_client(transport, clock)

    with pytest.raises(AIAuthError) as ei:
        asyncio.run(client.generate("q"))
    assert ei.value.status == 401
    assert transport.calls == 1


def test_generate_rate_limit_is_retried(clock):
    transport = StubTransport(ProviderReply(429, {}), ProviderReply(200, gemini_body("ok")))
    client = make_client(transport, clock)

    assert asyncio.run(client.generate("q")).text == "ok"
    assert transport.calls == 2


def test_generate_rate_limit_exhausted(clock):
    transport = StubTransport(ProviderReply(429, {}))
    client = make_client(transport, clock)

    with pytest.raises(AIRateLimitError):
        asyncio.run(client.generate("q"))
    assert transport.calls == 4


def test_generate_bad_request_is_terminal(clock):
    transport = StubTransport(ProviderReply(400, {"error": {"message": "bad"}}))
    client = make_client(transport, clock)

    with pytest.raises(AIRequestError):
        asyncio.run(client.generate("q"))
    assert transport.calls == 1


def test_generate_invalid_body_is_terminal(clock):
    transport = StubTransport(ProviderReply(200, {"candidates": []}))
    client = make_client(transport, clock)

    with pytest.raises(AIValidationError):
        asyncio.run(client.generate("q"))
    assert transport.calls == 1


def test_generate_server_error_exhausts_retries(clock):
    transport = StubTransport(ProviderReply(500, {}))
    client = make_client(transport, clock)

    with pytest.raises(AIServerError):
        asyncio.run(client.generate("q"))
    assert transport.calls == 4


def test_client_requires_a_transport():
    with pytest.raises(TypeError):
        RequestClient(object(), api_key="k")


def test_rate_limit_wait_does_not_count_against_the_attempt_timeout():
    # 每分鐘 1 次：第二次呼叫要等 60 秒（實際約 0.3 秒），比 attempt_timeout 長
    clock = ScaledClock(scale=0.005)
    transport = StubTransport()
    client = RequestClient(
        transport,
        api_key="test-key",
        rate_limiter=RateLimiter(requests_per_minute=1, clock=clock),
        retry_executor=RetryExecutor(max_retries=1, attempt_timeout=0.2, clock=clock, rng=lambda: 0.0),
        clock=clock,
    )

    async def run():
        await client.generate("first")
        started = clock.now()
        second = await client.generate("second")
        return second, clock.now() - started

    second, waited = asyncio.run(run())

    assert second.text
    assert transport.calls == 2
    assert waited >= 50.0


def test_request_log_carries_mode_and_fingerprint(clock, caplog):
    client = make_client(StubTransport(), clock)

    with caplog.at_level(logging.INFO, logger="assistant_observability"):
        asyncio.run(client.generate("Explain federalism", mode="general", fingerprint="abcdef0123456789"))

    messages = [r.getMessage() for r in caplog.records if "AI Request Success" in r.getMessage()]
    assert messages
    assert "'mode': 'general'" in messages[0]
    assert "'fingerprint': 'abcdef012345'" in messages[0]
