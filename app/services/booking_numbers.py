"""订单号生成：BK + yymmdd + 当日四位流水号

有 Redis 时用 INCR 取当日流水号，否则查当天最大订单号 + 1；
出错或撞号时退回到 BK + yymmdd + 毫秒时间戳后六位 + 三位随机数。
订单号不参与并发控制，退回格式不影响正确性。
"""

from datetime import datetime
import logging
import random
import time
from typing import Callable, Optional

from redis import Redis
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.bookings import Booking
from app.services.overlap import as_utc, utcnow

logger = logging.getLogger(__name__)

PREFIX = "BK"
SEQUENCE_WIDTH = 4
SEQUENCE_KEY_TTL_SECONDS = 2 * 24 * 3600
FALLBACK_SUFFIX_WIDTH = 3


class BookingNumberGenerator:
    def __init__(self, db: Session, redis: Optional[Redis] = None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.redis = redis
        self.clock = clock

    def _day(self) -> str:
        return as_utc(self.clock()).strftime("%y%m%d")

    def fallback(self, day: Optional[str] = None) -> str:
        day = day or self._day()
        timestamp = str(int(time.time() * 1000))[-6:]
        suffix = random.randrange(10 ** FALLBACK_SUFFIX_WIDTH)
        return f"{PREFIX}{day}{timestamp}{suffix:0{FALLBACK_SUFFIX_WIDTH}d}"

    def _sequence_from_redis(self, day: str) -> int:
        key = f"booking:seq:{day}"
        sequence = int(self.redis.incr(key))
        if sequence == 1:
            self.redis.expire(key, SEQUENCE_KEY_TTL_SECONDS)
        return sequence

    def _sequence_from_db(self, day: str) -> int:
        prefix = f"{PREFIX}{day}"
        last = self.db.execute(
            select(func.max(Booking.booking_number)).where(
                Booking.booking_number.like(f"{prefix}%"),
                func.length(Booking.booking_number) == len(prefix) + SEQUENCE_WIDTH,
            )
        ).scalar_one_or_none()
        if not last:
            return 1
        return int(last[-SEQUENCE_WIDTH:]) + 1

    def _exists(self, number: str) -> bool:
        return self.db.execute(
            select(Booking.id).where(Booking.booking_number == number)
        ).first() is not None

    def next_number(self) -> str:
        day = self._day()
        try:
            if self.redis is not None:
                sequence = self._sequence_from_redis(day)
            else:
                sequence = self._sequence_from_db(day)
            if sequence >= 10 ** SEQUENCE_WIDTH:
                return self.fallback(day)
            number = f"{PREFIX}{day}{sequence:0{SEQUENCE_WIDTH}d}"
            if self._exists(number):
                logger.warning(f"订单号冲突，使用时间戳订单号: {number}")
                return self.fallback(day)
            return number
        except Exception as e:
            logger.warning(f"生成订单号失败，使用时间戳订单号: {str(e)}")
            return self.fallback(day)
