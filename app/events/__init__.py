from .publisher import EventPublisher, NullEventPublisher, RedisEventPublisher

__all__ = ["EventPublisher", "NullEventPublisher", "RedisEventPublisher"]
