# src/assistant/errors.py
from __future__ import annotations

from typing import Any, Optional


class AIError(RuntimeError):
    """所有 AI 呼叫相關錯誤的基底；status 為 provider 回傳的 HTTP 狀態（若有）。"""

    retryable: bool = False

    def __init__(self, message: str, *, status: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.data = data


class AIAuthError(AIError):
    pass


class AIRateLimitError(AIError):
    retryable = True


class AIServerError(AIError):
    retryable = True


class AITimeoutError(AIError):
    retryable = True


class AINetworkError(AIError):
    retryable = True


class AIValidationError(AIError):
    pass


class AIRequestError(AIError):
    """其他 4xx（例如 400 參數錯誤），不重試。"""
    pass


class InvalidModeError(ValueError):
    pass


class InputRejectedError(ValueError):
    pass


def error_for_status(status: int, data: Any = None) -> AIError:
    if status in (401, 403):
        msg = "Invalid API key" if status == 401 else "API access forbidden"
        return AIAuthError(msg, status=status, data=data)
    if status == 429:
        return AIRateLimitError("Rate limit exceeded", status=status, data=data)
    if status >= 500:
        return AIServerError(f"API server error: {status}", status=status, data=data)
    return AIRequestError(f"API error: {status}", status=status, data=data)
