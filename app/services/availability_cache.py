"""可用量缓存（仅供只读查询参考）

缓存 key 带上 product+location 的版本号，任何预占 / 订单 / 台账变更都会
INCR 版本号，旧缓存随即失效；TTL 另外不超过区间内最早一个预占的过期时间。
"""

import json
import logging
from datetime import datetime
from typing import Optional

from redis import Redis

logger = logging.getLogger(__name__)


def version_key(product_id: str, location_id: str) -> str:
    return f"availability:version:{product_id}:{location_id}"


class AvailabilityCache:
    def __init__(self, redis: Optional[Redis], ttl_seconds: int = 30):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def current_version(self, product_id: str, location_id: str) -> Optional[str]:
        """读取版本号；同一次查询的读和写都要用这一个值"""
        if not self.redis:
            return None
        try:
            return self.redis.get(version_key(product_id, location_id)) or "0"
        except Exception as e:
            logger.warning(f"读取可用量缓存版本失败: {str(e)}")
            return None

    @staticmethod
    def _key(product_id: str, location_id: str, version: str, start: datetime, end: datetime) -> str:
        return (
            f"availability:{product_id}:{location_id}:v{version}:"
            f"{start.isoformat()}:{end.isoformat()}"
        )

    def get(self, product_id: str, location_id: str, version: Optional[str],
            start: datetime, end: datetime) -> Optional[dict]:
        if not self.redis or version is None:
            return None
        try:
            cached = self.redis.get(self._key(product_id, location_id, version, start, end))
        except Exception as e:
            logger.warning(f"读取可用量缓存失败: {str(e)}")
            return None
        if cached is None:
            return None
        logger.debug(f"Cache hit for availability {product_id}@{location_id}")
        return json.loads(cached)

    def set(self, product_id: str, location_id: str, version: Optional[str],
            start: datetime, end: datetime, payload: dict, ttl_seconds: Optional[int] = None) -> None:
        if not self.redis or version is None:
            return
        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        if ttl <= 0:
            return
        try:
            self.redis.setex(
                self._key(product_id, location_id, version, start, end), ttl, json.dumps(payload)
            )
        except Exception as e:
            logger.warning(f"写入可用量缓存失败: {str(e)}")

    def invalidate(self, product_id: str, location_id: str) -> None:
        if not self.redis:
            return
        try:
            self.redis.incr(version_key(product_id, location_id))
            logger.debug(f"Cache invalidated for {product_id}@{location_id}")
        except Exception as e:
            logger.warning(f"失效可用量缓存失败: {str(e)}")
