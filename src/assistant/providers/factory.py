# src/assistant/providers/factory.py
from __future__ import annotations

from ..config import AssistantRuntimeConfig
from .base import ProviderTransport


def build_provider_transport(cfg: AssistantRuntimeConfig) -> ProviderTransport:
    provider = cfg.provider

    if provider == "gemini":
        from .gemini_provider import GeminiHttpTransport

        if not cfg.api_key:
            raise RuntimeError("assistant.gemini.api_key is required in examprep.toml for gemini provider.")
        return GeminiHttpTransport(timeout=cfg.request_timeout_sec)

    if provider == "mock":
        from .mock_provider import MockProvider

        return MockProvider(mode=cfg.default_mode)

    raise RuntimeError(f"Unknown assistant.provider in examprep.toml: {provider!r}")
