"""按 product+location 加分布式锁

锁只覆盖争用的那一对 key，不同商品/门店之间互不阻塞。
拿锁失败时指数退避加抖动重试，重试次数有上限，耗尽后抛 ContentionError。
"""

from contextlib import contextmanager
import logging
import random
import time
from typing import Callable, Iterator, Optional

from redlock import Redlock

from app.core.config import settings
from app.core.exceptions import ContentionError

logger = logging.getLogger(__name__)


def inventory_lock_key(product_id: str, location_id: str) -> str:
    return f"lock:inventory:{product_id}:{location_id}"


def backoff_delay(attempt: int, base_ms: int) -> float:
    """第 attempt 次失败后的等待秒数（带随机抖动）"""
    ceiling = base_ms * (2 ** attempt)
    return random.uniform(base_ms, ceiling) / 1000.0


@contextmanager
def inventory_lock(
    rlock: Optional[Redlock],
    product_id: str,
    location_id: str,
    ttl_ms: Optional[int] = None,
    max_attempts: Optional[int] = None,
    retry_base_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[None]:
    """获取库存锁；rlock 为空时直接放行，由数据库行锁兜底"""
    if rlock is None:
        yield
        return

    ttl_ms = ttl_ms or settings.LOCK_TTL_MS
    max_attempts = max_attempts or settings.LOCK_MAX_ATTEMPTS
    retry_base_ms = retry_base_ms or settings.LOCK_RETRY_BASE_MS
    lock_key = inventory_lock_key(product_id, location_id)

    lock = None
    for attempt in range(max_attempts):
        lock = rlock.lock(lock_key, ttl_ms)
        if lock:
            break
        if attempt < max_attempts - 1:
            delay = backoff_delay(attempt, retry_base_ms)
            logger.debug(f"Lock busy: {lock_key}, retry in {delay:.3f}s")
            sleep(delay)

    if not lock:
        logger.warning(f"获取库存锁失败: {lock_key}, attempts={max_attempts}")
        raise ContentionError(
            "库存操作冲突，请稍后重试",
            product_id=product_id,
            location_id=location_id,
            attempts=max_attempts,
        )

    try:
        yield
    finally:
        rlock.unlock(lock)
