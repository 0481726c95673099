"""预占 / 订单相关的 Celery 定时任务"""

from celery_app import app
from app.core.config import settings
from app.db.session import SessionLocal
from app.events.publisher import RedisEventPublisher
from app.services.availability_service import AvailabilityService
from app.services.booking_service import BookingService
from app.services.catalog import RedisProductCatalog
from app.core.redis import redis_client, redlock
import logging

logger = logging.getLogger(__name__)


def build_availability_service(db) -> AvailabilityService:
    return AvailabilityService(
        db,
        redis_client,
        redlock,
        publisher=RedisEventPublisher(redis_client, settings.EVENT_CHANNEL_PREFIX),
        catalog=RedisProductCatalog(redis_client),
    )


@app.task(name='tasks.holds.expire_holds')
def expire_holds(batch_size: int = 500):
    """把过期的有效预占置为 expired（幂等，可重复执行）

    Args:
        batch_size: 批处理大小，默认500条

    Returns:
        清理结果描述
    """
    db = SessionLocal()
    try:
        service = build_availability_service(db)
        count = service.expire_holds(batch_size)
        result = f"成功置为过期 {count} 条预占"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"过期预占清理任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


@app.task(name='tasks.bookings.mark_overdue')
def mark_overdue(batch_size: int = 500):
    """把租期已结束仍未归还的订单标记为逾期"""
    db = SessionLocal()
    try:
        service = BookingService(db, availability=build_availability_service(db))
        count = service.mark_overdue_bookings(batch_size)
        result = f"标记逾期订单 {count} 条"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"逾期订单标记任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


# 导出任务
__all__ = [
    'expire_holds',
    'mark_overdue',
]
