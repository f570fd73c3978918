# src/assistant/providers/base.py
# ProviderTransport：抽象介面
# RequestClient 只需要「送出 JSON POST、拿回狀態碼 + JSON」
# 讓 GeminiHttpTransport / MockProvider / 測試用 stub 可以互換使用

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..types import JsonDict, ProviderReply


@runtime_checkable
class ProviderTransport(Protocol):
    """
    Provider 傳輸層介面（Protocol）
    不必繼承，只要符合方法簽名即可。
    """

    name: str  # e.g. "gemini", "mock"

    async def post_json(
        self,
        url: str,
        payload: JsonDict,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProviderReply:
        """
        - 非 2xx 也要回傳 ProviderReply（狀態碼交給 RequestClient 分類）
        - 連線失敗 / 逾時：拋 AINetworkError / AITimeoutError
        """
        ...


def is_transport(obj: Any) -> bool:
    """
    runtime 小工具：檢查物件是否符合 ProviderTransport
    """
    return isinstance(obj, ProviderTransport)
