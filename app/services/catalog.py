"""商品 / 门店可用性查询（外部能力）

商品目录由其他服务维护，这里只关心“能不能下单”。
目录服务把状态写入 Redis：

    catalog:product:{product_id}:status   -> active / inactive / ...
    catalog:location:{location_id}:status -> active / inactive / ...

没有 key 视为 active；值不是 active 的都视为不可下单。
Redis 读不到时同样按 active 处理，和没有目录服务时一致。
"""

from dataclasses import dataclass
import logging
from typing import Iterable, Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ACTIVE = "active"


@dataclass(frozen=True)
class CatalogStatus:
    active: bool
    reason: Optional[str] = None


class ProductCatalog:
    def get_status(self, product_id: str, location_id: str) -> CatalogStatus:
        raise NotImplementedError


class StaticProductCatalog(ProductCatalog):
    """固定名单，脚本和测试使用"""

    def __init__(self, inactive_products: Iterable[str] = (), inactive_locations: Iterable[str] = ()):
        self.inactive_products = set(inactive_products)
        self.inactive_locations = set(inactive_locations)

    def get_status(self, product_id: str, location_id: str) -> CatalogStatus:
        if product_id in self.inactive_products:
            return CatalogStatus(active=False, reason="product_inactive")
        if location_id in self.inactive_locations:
            return CatalogStatus(active=False, reason="location_inactive")
        return CatalogStatus(active=True)


class RedisProductCatalog(ProductCatalog):
    def __init__(self, redis: Redis):
        self.redis = redis

    @staticmethod
    def product_key(product_id: str) -> str:
        return f"catalog:product:{product_id}:status"

    @staticmethod
    def location_key(location_id: str) -> str:
        return f"catalog:location:{location_id}:status"

    def get_status(self, product_id: str, location_id: str) -> CatalogStatus:
        try:
            product_status, location_status = self.redis.mget(
                [self.product_key(product_id), self.location_key(location_id)]
            )
        except RedisError as e:
            logger.warning(f"读取商品目录状态失败，按可售处理: {str(e)}")
            return CatalogStatus(active=True)
        if product_status is not None and product_status != ACTIVE:
            logger.debug(f"Product {product_id} is {product_status}")
            return CatalogStatus(active=False, reason="product_inactive")
        if location_status is not None and location_status != ACTIVE:
            logger.debug(f"Location {location_id} is {location_status}")
            return CatalogStatus(active=False, reason="location_inactive")
        return CatalogStatus(active=True)

    def set_product_status(self, product_id: str, status: str) -> None:
        self.redis.set(self.product_key(product_id), status)

    def set_location_status(self, location_id: str, status: str) -> None:
        self.redis.set(self.location_key(location_id), status)
