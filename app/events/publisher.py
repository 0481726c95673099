"""事件发布器

最多一次、尽力而为：发布失败只记日志，不影响业务事务。
订阅方应把事件当作“需要刷新”的提示，以 compute_availability 为准。
"""

import logging
from typing import List

from redis import Redis

from app.schemas.events import InventoryEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    """发布器接口"""

    def publish(self, event: InventoryEvent) -> None:
        raise NotImplementedError

    def publish_many(self, events: List[InventoryEvent]) -> None:
        for event in events:
            self.publish(event)


class NullEventPublisher(EventPublisher):
    """未配置 Redis 时使用，只打 debug 日志"""

    def publish(self, event: InventoryEvent) -> None:
        logger.debug(f"Event dropped (no publisher): {event.event_type.value}")


class RedisEventPublisher(EventPublisher):
    """通过 Redis Pub/Sub 扇出事件，WebSocket 网关订阅对应频道"""

    def __init__(self, redis: Redis, channel_prefix: str = ""):
        self.redis = redis
        self.channel_prefix = channel_prefix

    def channel_for(self, event: InventoryEvent) -> str:
        return f"{self.channel_prefix}{event.event_type.value}"

    def publish(self, event: InventoryEvent) -> None:
        channel = self.channel_for(event)
        try:
            self.redis.publish(channel, event.model_dump_json())
            logger.debug(f"Published {channel} for product {event.product_id}")
        except Exception as e:
            logger.error(f"事件发布失败: channel={channel}, error={str(e)}")
