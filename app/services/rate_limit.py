# app/services/rate_limit.py
from __future__ import annotations

import time
from typing import Optional, Tuple

from fastapi import HTTPException, Request, status
from redis.asyncio import Redis

from app.core.config import Settings


class RateLimiter:
    """
    Redis ZSET 滑動視窗限流（以 client IP 為維度）。
    停用時直接放行，不碰 Redis。
    """

    def __init__(self, redis_url: str, window_sec: int, max_per_ip: int, enabled: bool = True):
        self.redis_url = redis_url
        self.window_sec = window_sec
        self.max_per_ip = max_per_ip
        self.enabled = enabled
        # 單例 Redis（lazy-init）
        self._redis: Optional[Redis] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            redis_url=settings.REDIS_URL,
            window_sec=settings.RATE_LIMIT_WINDOW_SEC,
            max_per_ip=settings.RATE_LIMIT_MAX_PER_IP,
            enabled=settings.RATE_LIMIT_ENABLED and settings.ENV != "test",
        )

    def _get_redis(self) -> Redis:
        if not self.enabled:
            # 停用時理論上不應呼叫；若被誤用，明確拋錯幫助定位
            raise RuntimeError("Rate limit is disabled in current environment")
        if self._redis is None:
            self._redis = Redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    @staticmethod
    def _key_ip(ip: str) -> str:
        return f"rl:analyze:ip:{ip or 'unknown'}"

    async def check_and_hit(self, ip: str) -> Tuple[bool, int]:
        """
        回傳 (allowed, retry_after_seconds)；允許時順便記一次。
        retry_after = 距離最舊紀錄出窗的剩餘秒數（>=1）。
        """
        if not self.enabled:
            return True, 0

        r = self._get_redis()
        now_s = time.time()
        key = self._key_ip(ip)

        # 移除滑動視窗外的紀錄
        await r.zremrangebyscore(key, "-inf", now_s - self.window_sec)
        count = int(await r.zcard(key))
        if count >= self.max_per_ip:
            oldest = await r.zrange(key, 0, 0, withscores=True)
            oldest_ts = float(oldest[0][1]) if oldest else now_s
            retry_after = max(1, int(self.window_sec - (now_s - oldest_ts)))
            return False, retry_after

        await r.zadd(key, {f"{now_s:.6f}": now_s})
        await r.expire(key, self.window_sec)
        return True, 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency：超過上限時回 429 + Retry-After。"""
    limiter: RateLimiter = request.app.state.rate_limiter
    ip = request.client.host if request.client else "unknown"
    allowed, retry_after = await limiter.check_and_hit(ip)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests, please try again later",
            headers={"Retry-After": str(retry_after)},
        )
