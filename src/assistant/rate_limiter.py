# src/assistant/rate_limiter.py
#
# 滑動視窗限流（每分鐘 / 每小時，共用同一條時間戳記錄）
# - 不丟棄任何呼叫：超過上限就等待，直到最舊的時間戳離開視窗
# - 等待走 clock.sleep（協作式），只會卡住呼叫的那個 task
# - 每個 process 共用一個 instance（單一全域 key，非 per-user）

from __future__ import annotations

from collections import deque
from typing import Deque, Optional

from .clock import Clock, SystemClock
from . import observability as obs


MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    def __init__(
        self,
        *,
        requests_per_minute: int = 60,
        requests_per_hour: int = 1000,
        clock: Optional[Clock] = None,
    ):
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.clock = clock or SystemClock()
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        # 視窗內的條件：t > now - window
        cutoff = now - HOUR
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _minute_window(self, now: float) -> list:
        cutoff = now - MINUTE
        return [t for t in self._timestamps if t > cutoff]

    def required_wait(self) -> float:
        """目前若要送出一個呼叫，需要等待的秒數（0 表示可立即送出）。"""
        now = self.clock.now()
        self._prune(now)

        recent = self._minute_window(now)
        if len(recent) >= self.requests_per_minute:
            return max(0.0, MINUTE - (now - recent[0]))

        if len(self._timestamps) >= self.requests_per_hour:
            return max(0.0, HOUR - (now - self._timestamps[0]))

        return 0.0

    async def check_and_reserve(self) -> float:
        """
        等到兩個視窗都允許，再記錄這次呼叫。
        回傳：總共等待的秒數
        """
        waited = 0.0
        while True:
            wait = self.required_wait()
            if wait <= 0:
                self._timestamps.append(self.clock.now())
                return waited

            obs.log_rate_limit_wait(wait, in_minute=len(self._minute_window(self.clock.now())),
                                    in_hour=len(self._timestamps))
            await self.clock.sleep(wait)
            waited += wait

    @property
    def calls_in_window(self) -> int:
        now = self.clock.now()
        self._prune(now)
        return len(self._timestamps)

    def reset(self) -> None:
        self._timestamps.clear()
