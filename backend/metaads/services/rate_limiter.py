"""
Graph API 全局速率限制器

两层限制：
- 每分钟：60 秒滑动窗口，超出时排队等待
- 每小时：从第一次请求开始计时的固定窗口，用完直接拒绝

FacebookAdsClient 和 FacebookOAuthService 每次发请求前调用 acquire()。
进程内共享一个实例（get_rate_limiter）。
"""
import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


class GraphRateLimiter:
    """协程安全的 Graph API 请求配额"""

    def __init__(
        self,
        max_per_minute: int = 180,
        max_per_hour: int = 4800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self._clock = clock
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._recent: Deque[float] = deque()
        self._window_start: Optional[float] = None
        self._used_this_hour = 0

    def _loop_lock(self) -> asyncio.Lock:
        """锁绑定到事件循环，换了循环就重建"""
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def _hour_expired(self, now: float) -> bool:
        return self._window_start is None or now - self._window_start >= HOUR

    def _roll_hour(self, now: float) -> None:
        if not self._hour_expired(now):
            return
        if self._used_this_hour:
            logger.info(f"[RateLimiter] 小时窗口结束，共消耗 {self._used_this_hour} 次")
        self._window_start = now
        self._used_this_hour = 0

    def _evict(self, now: float) -> None:
        while self._recent and now - self._recent[0] >= MINUTE:
            self._recent.popleft()

    async def acquire(self) -> bool:
        """
        申请一次请求配额

        分钟窗口已满时等待最早的记录过期；小时配额用完返回 False，调用方不应再发请求。
        """
        async with self._loop_lock():
            now = self._clock()
            self._roll_hour(now)
            if self._used_this_hour >= self.max_per_hour:
                logger.warning(
                    f"[RateLimiter] 小时配额已用完 ({self._used_this_hour}/{self.max_per_hour})"
                )
                return False

            self._evict(now)
            if len(self._recent) >= self.max_per_minute:
                delay = MINUTE - (now - self._recent[0]) + 0.1
                logger.debug(f"[RateLimiter] 分钟窗口已满，排队 {delay:.1f}s")
                # 持锁等待，后来的请求按顺序排在后面
                await asyncio.sleep(delay)
                now = self._clock()
                self._evict(now)

            self._recent.append(now)
            self._used_this_hour += 1
            if self._used_this_hour % 500 == 0:
                logger.info(f"[RateLimiter] 本小时已用 {self._used_this_hour}/{self.max_per_hour}")
            return True

    @property
    def hourly_remaining(self) -> int:
        if self._hour_expired(self._clock()):
            return self.max_per_hour
        return max(0, self.max_per_hour - self._used_this_hour)

    @property
    def minute_used(self) -> int:
        now = self._clock()
        return sum(1 for t in self._recent if now - t < MINUTE)


_limiter: Optional[GraphRateLimiter] = None


def get_rate_limiter() -> GraphRateLimiter:
    """进程级单例，首次调用时按配置创建"""
    global _limiter
    if _limiter is None:
        from metaads.config import settings

        _limiter = GraphRateLimiter(
            max_per_minute=settings.GRAPH_MAX_REQUESTS_PER_MINUTE,
            max_per_hour=settings.GRAPH_MAX_REQUESTS_PER_HOUR,
        )
        logger.info(
            f"[RateLimiter] 初始化: {_limiter.max_per_minute} 次/分钟, "
            f"{_limiter.max_per_hour} 次/小时"
        )
    return _limiter


def reset_rate_limiter() -> None:
    """丢弃单例（测试用）"""
    global _limiter
    _limiter = None
