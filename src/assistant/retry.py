# src/assistant/retry.py
#
# RetryExecutor：有上限的重試 + 指數退避 + jitter
# - 可重試：AIServerError / AIRateLimitError / AITimeoutError / AINetworkError
# - 其餘（401/403/400、回應格式錯誤）立即拋出
# - 每次嘗試都包在 asyncio.wait_for 裡，逾時會取消進行中的呼叫並視為可重試的 timeout
# - before_attempt（例如限流）在計時之外執行，等待再久也不算逾時
# - 呼叫端取消（CancelledError）不會被吞掉，也不會重試

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .clock import Clock, SystemClock
from .errors import AIError, AINetworkError, AITimeoutError
from . import observability as obs

T = TypeVar("T")


def classify_exception(e: Exception) -> Exception:
    """把外部例外轉成錯誤分類；無法分類的原樣回傳（視為不可重試）。"""
    if isinstance(e, AIError):
        return e
    if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)):
        err: AIError = AITimeoutError("Request timeout")
        err.__cause__ = e
        return err
    if isinstance(e, (httpx.HTTPError, OSError)):
        err = AINetworkError(f"Network error: {e}")
        err.__cause__ = e
        return err
    return e


def is_retriable_exception(e: Exception) -> bool:
    return isinstance(e, AIError) and e.retryable


def compute_backoff(
    attempt: int,
    *,
    base_delay: float,
    max_delay: float = 30.0,
    max_jitter: float = 1.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """delay = min(base * 2^attempt + jitter(<= max_jitter), max_delay)"""
    return min(base_delay * (2 ** attempt) + rng() * max_jitter, max_delay)


class RetryExecutor:
    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_jitter: float = 1.0,
        attempt_timeout: Optional[float] = 30.0,
        clock: Optional[Clock] = None,
        rng: Callable[[], float] = random.random,
        is_retriable: Callable[[Exception], bool] = is_retriable_exception,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_jitter = max_jitter
        self.attempt_timeout = attempt_timeout
        self.clock = clock or SystemClock()
        self.rng = rng
        self.is_retriable = is_retriable

    async def _run_attempt(self, attempt_fn: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await attempt_fn()
        return await asyncio.wait_for(attempt_fn(), timeout=self.attempt_timeout)

    async def execute(
        self,
        attempt_fn: Callable[[], Awaitable[T]],
        *,
        before_attempt: Optional[Callable[[], Awaitable[object]]] = None,
    ) -> T:
        last_exc: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            if before_attempt is not None:
                await before_attempt()
            try:
                return await self._run_attempt(attempt_fn)
            except Exception as e:
                err = classify_exception(e)
                last_exc = err
                if attempt >= self.max_retries or not self.is_retriable(err):
                    if err is e:
                        raise
                    raise err from e

                delay = compute_backoff(
                    attempt,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    max_jitter=self.max_jitter,
                    rng=self.rng,
                )
                obs.log_retry(attempt + 1, self.max_retries, delay, err)
                await self.clock.sleep(delay)

        raise RuntimeError(f"Retry failed: {last_exc}")  # pragma: no cover
