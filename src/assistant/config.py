# src/assistant/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_MODEL = "gemini-1.5-flash"


@dataclass(frozen=True)
class AssistantRuntimeConfig:
    provider: str = "gemini"
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL

    # retry / timeout
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    request_timeout_ms: int = 30000

    # rate limit（單一全域 key）
    requests_per_minute: int = 60
    requests_per_hour: int = 1000

    # cache
    cache_enabled: bool = True
    max_cache_entries: int = 1000
    max_context_entries: int = 100
    default_ttl_per_category: Dict[str, float] = field(default_factory=dict)  # 秒
    cache_prefix: str = "examprep_ai_cache_"
    storage_path: Optional[str] = None  # None: 只存在記憶體
    sweep_interval_sec: float = 300.0

    # orchestrator
    default_mode: str = "general"
    history_window: int = 5
    fallback_enabled: bool = True
    coalesce_requests: bool = True
    max_input_chars: int = 4000
    reject_input_chars: int = 20000

    def __post_init__(self) -> None:
        if self.provider not in ("gemini", "mock"):
            raise RuntimeError(f"Unknown assistant.provider: {self.provider!r}")
        if self.max_retries < 0:
            raise RuntimeError("assistant.max_retries must be >= 0")
        if self.requests_per_minute <= 0 or self.requests_per_hour <= 0:
            raise RuntimeError("assistant.requests_per_minute / requests_per_hour must be > 0")
        if self.max_cache_entries <= 0:
            raise RuntimeError("assistant.max_cache_entries must be > 0")
        if self.history_window < 1:
            raise RuntimeError("assistant.history_window must be >= 1")
        if self.reject_input_chars < self.max_input_chars:
            raise RuntimeError("assistant.reject_input_chars must be >= max_input_chars")

    @property
    def retry_base_delay_sec(self) -> float:
        return self.retry_base_delay_ms / 1000.0

    @property
    def request_timeout_sec(self) -> float:
        return self.request_timeout_ms / 1000.0

    @classmethod
    def from_env(cls) -> "AssistantRuntimeConfig":
        """
        依環境變數建立設定（會先讀 .env）
        """
        load_dotenv()

        provider = os.getenv("EXAMPREP_AI_PROVIDER", "gemini").lower()
        api_key = os.getenv("GEMINI_API_KEY")
        if provider == "gemini" and not api_key:
            raise RuntimeError("GEMINI_API_KEY is required for gemini provider")

        return cls(
            provider=provider,
            api_key=api_key,
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL),
            max_retries=int(os.getenv("EXAMPREP_AI_MAX_RETRIES", "3")),
            request_timeout_ms=int(os.getenv("EXAMPREP_AI_TIMEOUT_MS", "30000")),
            requests_per_minute=int(os.getenv("EXAMPREP_AI_RPM", "60")),
            requests_per_hour=int(os.getenv("EXAMPREP_AI_RPH", "1000")),
            cache_enabled=os.getenv("EXAMPREP_AI_CACHE", "1") not in ("0", "false", "False"),
            storage_path=os.getenv("EXAMPREP_AI_STORAGE_PATH") or None,
            default_mode=os.getenv("EXAMPREP_AI_DEFAULT_MODE", "general"),
        )


def load_assistant_runtime_config(app_config: Dict[str, Any]) -> AssistantRuntimeConfig:
    """讀 examprep.toml 的 [assistant] 區段（由 get_app_config() 載入）。"""
    cfg = app_config.get("assistant")
    if not isinstance(cfg, dict):
        raise RuntimeError("Missing [assistant] config in examprep.toml (app_config['assistant']).")

    provider = str(cfg.get("provider", "gemini")).lower()

    gemini_cfg = cfg.get("gemini") or {}
    api_key = gemini_cfg.get("api_key") or os.getenv("GEMINI_API_KEY")
    if provider == "gemini" and not api_key:
        raise RuntimeError("assistant.gemini.api_key is required in examprep.toml for gemini provider.")

    rate_cfg = cfg.get("rate_limit") or {}
    cache_cfg = cfg.get("cache") or {}

    ttl_raw = cache_cfg.get("ttl_per_category") or {}
    if not isinstance(ttl_raw, dict):
        raise RuntimeError("assistant.cache.ttl_per_category must be a table of seconds.")
    ttl_per_category = {str(k): float(v) for k, v in ttl_raw.items()}

    return AssistantRuntimeConfig(
        provider=provider,
        api_key=api_key,
        model=str(gemini_cfg.get("model", DEFAULT_MODEL)),
        base_url=str(gemini_cfg.get("base_url", DEFAULT_BASE_URL)),
        max_retries=int(cfg.get("max_retries", 3)),
        retry_base_delay_ms=int(cfg.get("retry_base_delay_ms", 1000)),
        request_timeout_ms=int(cfg.get("request_timeout_ms", 30000)),
        requests_per_minute=int(rate_cfg.get("requests_per_minute", 60)),
        requests_per_hour=int(rate_cfg.get("requests_per_hour", 1000)),
        cache_enabled=bool(cache_cfg.get("enabled", True)),
        max_cache_entries=int(cache_cfg.get("max_entries", 1000)),
        max_context_entries=int(cache_cfg.get("max_context_entries", 100)),
        default_ttl_per_category=ttl_per_category,
        cache_prefix=str(cache_cfg.get("prefix", "examprep_ai_cache_")),
        storage_path=cache_cfg.get("storage_path"),
        sweep_interval_sec=float(cache_cfg.get("sweep_interval_sec", 300)),
        default_mode=str(cfg.get("default_mode", "general")),
        history_window=int(cfg.get("history_window", 5)),
        fallback_enabled=bool(cfg.get("fallback_enabled", True)),
        coalesce_requests=bool(cfg.get("coalesce_requests", True)),
        max_input_chars=int(cfg.get("max_input_chars", 4000)),
        reject_input_chars=int(cfg.get("reject_input_chars", 20000)),
    )
