# src/assistant/providers/gemini_provider.py
#
# GeminiHttpTransport：以 httpx.AsyncClient 送出 generateContent 請求
# 實作 ProviderTransport 介面
# - 只負責傳輸：狀態碼原樣回給 RequestClient 分類（401/429/5xx...）
# - 逾時 -> AITimeoutError；其他 httpx 錯誤 -> AINetworkError；body 不是 JSON -> AIValidationError

from __future__ import annotations

from typing import Dict, Optional

import httpx

from ..errors import AINetworkError, AITimeoutError, AIValidationError
from ..types import JsonDict, ProviderReply


class GeminiHttpTransport:
    name: str = "gemini"

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        # 延遲建立；同一個 transport 共用連線池
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def post_json(
        self,
        url: str,
        payload: JsonDict,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProviderReply:
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers=headers,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as e:
            raise AITimeoutError("Request timeout") from e
        except httpx.HTTPError as e:
            # 連線層錯誤以及 DecodingError / TooManyRedirects 等
            raise AINetworkError(f"Network error: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                # 錯誤頁常常不是 JSON，保留狀態碼讓上層分類
                return ProviderReply(status=response.status_code, body={"error": {"message": response.text[:500]}})
            raise AIValidationError("Provider returned a non-JSON body", status=response.status_code) from e

        return ProviderReply(status=response.status_code, body=body)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
