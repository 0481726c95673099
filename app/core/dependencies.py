"""依赖注入配置模块"""

import logging
from typing import Optional

from fastapi import Depends, Header
from redis.exceptions import RedisError

# 数据库会话依赖
from app.db.session import SessionLocal
from sqlalchemy.orm import Session

# Redis 依赖
from app.core.redis import redis_client, redlock
from app.core.config import settings

from app.events.publisher import EventPublisher, NullEventPublisher, RedisEventPublisher
from app.services.availability_service import AvailabilityService
from app.services.booking_service import BookingService
from app.services.catalog import ProductCatalog, RedisProductCatalog, StaticProductCatalog

logger = logging.getLogger(__name__)


def get_redis():
    """获取同步 Redis 客户端（连接失败时返回 None）"""
    try:
        redis_client.ping()
        return redis_client
    except RedisError as e:
        logger.warning(f"Redis 不可用，本次请求不使用缓存、事件和分布式锁: {str(e)}")
        return None

def get_redlock(redis = Depends(get_redis)):
    """获取 Redlock 分布式锁实例（Redis 不可用或未配置服务器时返回 None）"""
    if redis is None or not getattr(redlock, "servers", None):
        return None
    return redlock

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_event_publisher(redis = Depends(get_redis)) -> EventPublisher:
    """事件发布器，没有 Redis 时退化为空实现"""
    if redis is None:
        return NullEventPublisher()
    return RedisEventPublisher(redis, settings.EVENT_CHANNEL_PREFIX)


def get_catalog(redis = Depends(get_redis)) -> ProductCatalog:
    """商品/门店状态查询"""
    if redis is None:
        return StaticProductCatalog()
    return RedisProductCatalog(redis)


def get_availability_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
    rlock = Depends(get_redlock),
    publisher: EventPublisher = Depends(get_event_publisher),
    catalog: ProductCatalog = Depends(get_catalog),
) -> AvailabilityService:
    """获取可用量服务实例（依赖注入）"""
    return AvailabilityService(db=db, redis=redis, rlock=rlock, publisher=publisher, catalog=catalog)


def get_booking_service(
    availability: AvailabilityService = Depends(get_availability_service),
) -> BookingService:
    """获取订单服务实例，与可用量服务共用同一个会话"""
    return BookingService(db=availability.db, availability=availability)


class Caller:
    """调用方身份（认证由网关完成，这里只读请求头）"""

    def __init__(self, user_id: str, role: Optional[str] = None):
        self.user_id = user_id
        self.role = role

    @property
    def is_staff(self) -> bool:
        return self.role in settings.staff_roles


def get_caller(
    x_user_id: str = Header(..., min_length=1, description="调用方用户ID"),
    x_user_role: Optional[str] = Header(None, description="调用方角色"),
) -> Caller:
    return Caller(user_id=x_user_id, role=x_user_role)

