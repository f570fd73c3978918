# tests/test_gemini_transport.py
import asyncio

import httpx
import pytest

from assistant.cache import ResponseCache
from assistant.client import RequestClient
from assistant.config import AssistantRuntimeConfig
from assistant.errors import AINetworkError, AITimeoutError, AIValidationError
from assistant.modes import ModeRegistry
from assistant.orchestrator import ServiceOrchestrator
from assistant.providers import build_provider_transport, is_transport
from assistant.providers.gemini_provider import GeminiHttpTransport
from assistant.providers.mock_provider import MockProvider
from assistant.rate_limiter import RateLimiter
from assistant.retry import RetryExecutor


URL = "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-flash:generateContent"


def make_transport(handler):
    return GeminiHttpTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def post(transport, payload=None, headers=None):
    async def run():
        try:
            return await transport.post_json(URL, payload or {"contents": []}, headers=headers)
        finally:
            await transport.aclose()

    return asyncio.run(run())


def test_posts_json_and_returns_status_and_body():
    seen = {}

    def handler(request):
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = request.content
        return httpx.Response(200, json={"candidates": []})

    reply = post(make_transport(handler), {"contents": [{"parts": [{"text": "hi"}]}]}, {"x-goog-api-key": "k"})

    assert reply.status == 200
    assert reply.body == {"candidates": []}
    assert seen["key"] == "k"
    assert b'"text"' in seen["body"]


def test_error_statuses_are_returned_not_raised():
    reply = post(make_transport(lambda request: httpx.Response(429, json={"error": {"code": 429}})))
    assert reply.status == 429
    assert reply.body["error"]["code"] == 429


def test_non_json_error_page_keeps_status():
    reply = post(make_transport(lambda request: httpx.Response(502, text="<html>Bad gateway</html>")))
    assert reply.status == 502
    assert "Bad gateway" in reply.body["error"]["message"]


def test_non_json_success_is_a_validation_error():
    with pytest.raises(AIValidationError):
        post(make_transport(lambda request: httpx.Response(200, text="not json")))


def test_timeout_maps_to_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(AITimeoutError):
        post(make_transport(handler))


def test_connection_failure_maps_to_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AINetworkError):
        post(make_transport(handler))


def test_factory_builds_transports():
    gemini = build_provider_transport(AssistantRuntimeConfig(provider="gemini", api_key="k"))
    mock = build_provider_transport(AssistantRuntimeConfig(provider="mock"))

    assert isinstance(gemini, GeminiHttpTransport)
    assert isinstance(mock, MockProvider)
    assert is_transport(gemini) and is_transport(mock)


def test_factory_requires_key_for_gemini():
    with pytest.raises(RuntimeError):
        build_provider_transport(AssistantRuntimeConfig(provider="gemini"))


@pytest.mark.parametrize("error_cls", [httpx.DecodingError, httpx.TooManyRedirects])
def test_other_httpx_failures_map_to_network_error(error_cls):
    def handler(request):
        raise error_cls("broken response", request=request)

    with pytest.raises(AINetworkError) as info:
        post(make_transport(handler))
    assert isinstance(info.value.__cause__, error_cls)


def test_undecodable_response_ends_in_a_fallback_reply(clock):
    def handler(request):
        raise httpx.DecodingError("bad gzip", request=request)

    transport = make_transport(handler)
    orch = ServiceOrchestrator(
        RequestClient(
            transport,
            api_key="test-key",
            rate_limiter=RateLimiter(clock=clock),
            retry_executor=RetryExecutor(max_retries=1, clock=clock, rng=lambda: 0.0),
            clock=clock,
        ),
        ResponseCache(clock=clock),
        ModeRegistry(),
        fallback=MockProvider(),
        clock=clock,
    )

    async def run():
        try:
            return await orch.send_message("Explain federalism")
        finally:
            await orch.close()

    reply = asyncio.run(run())

    assert reply.is_fallback is True
    assert reply.error_type == "AINetworkError"
