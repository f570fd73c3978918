# src/assistant/client.py

# RequestClient：Gemini generateContent 的統一呼叫入口
# 唯一對外入口：client.generate()
# 統一處理：請求封裝（文字 / 圖片 / 生成參數 / 安全設定）、限流、重試、timeout、回應驗證與擷取

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence

from .clock import Clock, SystemClock
from .config import AssistantRuntimeConfig
from .errors import AIValidationError, error_for_status
from .normalize import extract_text, extract_usage, normalize_response, validate_response
from .rate_limiter import RateLimiter
from .retry import RetryExecutor
from .providers.base import ProviderTransport, is_transport
from .types import JsonDict, ResponseEnvelope, Usage
from . import observability as obs

logger = logging.getLogger(__name__)


DEFAULT_GENERATION = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 4096,
}

DEFAULT_SAFETY_SETTINGS: List[Dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


def parse_image_data_url(image: str) -> Optional[Dict[str, str]]:
    """
    data:image/jpeg;base64,.... -> {"mime_type": "image/jpeg", "data": "...."}
    格式不正確時回傳 None
    """
    if not isinstance(image, str) or not image.startswith("data:") or "," not in image:
        return None

    header, data = image.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0].strip()
    if not mime_type or ";base64" not in header:
        return None

    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None

    return {"mime_type": mime_type, "data": data}


class RequestClient:
    def __init__(
        self,
        transport: ProviderTransport,
        *,
        api_key: Optional[str] = None,
        model: str = "gemini-1.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
        rate_limiter: Optional[RateLimiter] = None,
        retry_executor: Optional[RetryExecutor] = None,
        request_timeout: Optional[float] = 30.0,
        safety_settings: Optional[Sequence[Dict[str, str]]] = None,
        clock: Optional[Clock] = None,
    ):
        if not is_transport(transport):
            raise TypeError(f"transport must implement ProviderTransport, got {type(transport).__name__}")
        self.transport = transport
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.clock = clock or SystemClock()

        self.rate_limiter = rate_limiter or RateLimiter(clock=self.clock)
        self.retry_executor = retry_executor or RetryExecutor(
            attempt_timeout=request_timeout,
            clock=self.clock,
        )
        self.request_timeout = request_timeout
        self.safety_settings = list(safety_settings or DEFAULT_SAFETY_SETTINGS)

    @classmethod
    def from_config(
        cls,
        cfg: AssistantRuntimeConfig,
        transport: ProviderTransport,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Clock] = None,
    ) -> "RequestClient":
        clock = clock or SystemClock()
        limiter = rate_limiter or RateLimiter(
            requests_per_minute=cfg.requests_per_minute,
            requests_per_hour=cfg.requests_per_hour,
            clock=clock,
        )
        executor = RetryExecutor(
            max_retries=cfg.max_retries,
            base_delay=cfg.retry_base_delay_sec,
            attempt_timeout=cfg.request_timeout_sec,
            clock=clock,
        )
        return cls(
            transport,
            api_key=cfg.api_key,
            model=cfg.model,
            base_url=cfg.base_url,
            rate_limiter=limiter,
            retry_executor=executor,
            request_timeout=cfg.request_timeout_sec,
            clock=clock,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/{self.model}:generateContent"

    # ---- Public API ----

    def build_request(
        self,
        prompt: str,
        *,
        temperature: Optional[float] = None,
        top_k: Optional[int] = None,
        top_p: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        image: Optional[str] = None,
        safety_settings: Optional[Sequence[Dict[str, str]]] = None,
        generation_config: Optional[Dict[str, Any]] = None,
    ) -> JsonDict:
        parts: List[JsonDict] = [{"text": prompt}]

        if image:
            inline = parse_image_data_url(image)
            if inline is None:
                # 圖片格式錯誤時照樣送出文字
                logger.warning("Ignoring malformed image attachment (expected base64 data URL).")
            else:
                parts.append({"inline_data": inline})

        gen = dict(DEFAULT_GENERATION)
        if temperature is not None:
            gen["temperature"] = temperature
        if top_k is not None:
            gen["topK"] = top_k
        if top_p is not None:
            gen["topP"] = top_p
        if max_output_tokens is not None:
            gen["maxOutputTokens"] = max_output_tokens
        if generation_config:
            gen.update(generation_config)

        return {
            "contents": [{"parts": parts}],
            "generationConfig": gen,
            "safetySettings": list(safety_settings) if safety_settings is not None else list(self.safety_settings),
        }

    async def generate(
        self,
        prompt: str,
        *,
        trace_id: Optional[str] = None,
        mode: Optional[str] = None,
        fingerprint: Optional[str] = None,
        **options: Any,
    ) -> ResponseEnvelope:
        """
        送出 prompt，回傳已驗證的 ResponseEnvelope。
        options 同 build_request()；mode / fingerprint 只用於 log。
        限流等待在每次嘗試的 timeout 之外。
        """
        payload = self.build_request(prompt, **options)
        trace_id = trace_id or uuid.uuid4().hex[:12]
        attempts = 0
        started = time.perf_counter()

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await self._send(payload)

        try:
            data = await self.retry_executor.execute(attempt, before_attempt=self.rate_limiter.check_and_reserve)
        except Exception as e:
            obs.log_request(trace_id, mode, self.model, fingerprint, self._elapsed_ms(started), None,
                            max(0, attempts - 1), error_type=type(e).__name__)
            raise

        envelope = normalize_response(data)
        obs.log_request(trace_id, mode, self.model, fingerprint, self._elapsed_ms(started),
                        envelope.usage.total_units, attempts - 1)
        return envelope

    def extract_text(self, data: Any) -> str:
        return extract_text(data)

    def extract_usage(self, data: Any) -> Usage:
        return extract_usage(data)

    # ---- Single attempt ----

    async def _send(self, payload: JsonDict) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key

        reply = await self.transport.post_json(
            self.endpoint,
            payload,
            headers=headers,
            timeout=self.request_timeout,
        )

        if reply.status >= 400:
            logger.error("API Error Details: status=%s body=%s", reply.status, reply.body)
            raise error_for_status(reply.status, reply.body)

        check = validate_response(reply.body)
        if not check.valid:
            logger.error("Response validation failed: %s", check.reason)
            raise AIValidationError(f"Invalid API response format: {check.reason}", status=reply.status, data=reply.body)

        return reply.body

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
