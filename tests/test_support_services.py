"""缓存 / 目录 / 事件 / 订单号 / 区间工具单元测试"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch
from redis.exceptions import ConnectionError as RedisConnectionError

from app.events.publisher import NullEventPublisher, RedisEventPublisher
from app.models.bookings import Booking, BookingStatus
from app.schemas.events import EventType, HoldEvent
from app.services.availability_service import AvailabilityService
from app.services.availability_cache import AvailabilityCache, version_key
from app.services.booking_numbers import BookingNumberGenerator
from app.services.catalog import RedisProductCatalog, StaticProductCatalog
from app.services.overlap import as_utc, overlaps

from conftest import JUNE_1, JUNE_5, JUNE_8, FakeClock


def hold_event(**overrides):
    data = dict(
        event_type=EventType.HOLD_CREATED,
        product_id="P1",
        location_id="L1",
        quantity=2,
        start_date=JUNE_1,
        end_date=JUNE_5,
        hold_id=7,
        user_id="alice",
    )
    data.update(overrides)
    return HoldEvent(**data)


class TestOverlap:
    """区间工具测试类"""

    def test_overlapping(self):
        assert overlaps(JUNE_1, JUNE_5, JUNE_5 - timedelta(hours=1), JUNE_8)

    def test_touching_is_not_overlap(self):
        """测试左闭右开：首尾相接不算重叠"""
        assert not overlaps(JUNE_1, JUNE_5, JUNE_5, JUNE_8)
        assert not overlaps(JUNE_5, JUNE_8, JUNE_1, JUNE_5)

    def test_containment(self):
        assert overlaps(JUNE_1, JUNE_8, JUNE_5, JUNE_5 + timedelta(days=1))

    def test_as_utc(self):
        """测试 naive 时间按 UTC 处理，其他时区换算成 UTC"""
        naive = datetime(2030, 6, 1, 8, 0)
        assert as_utc(naive) == datetime(2030, 6, 1, 8, 0, tzinfo=timezone.utc)

        shanghai = timezone(timedelta(hours=8))
        assert as_utc(datetime(2030, 6, 1, 16, 0, tzinfo=shanghai)).hour == 8


class TestAvailabilityCache:
    """可用量缓存测试类"""

    def test_no_redis(self):
        cache = AvailabilityCache(None)
        assert cache.current_version("P1", "L1") is None
        assert cache.get("P1", "L1", "0", JUNE_1, JUNE_5) is None
        cache.set("P1", "L1", "0", JUNE_1, JUNE_5, {"a": 1})
        cache.invalidate("P1", "L1")

    def test_ttl_capped(self, mock_redis):
        """测试 TTL 取配置和传入值中的较小者"""
        cache = AvailabilityCache(mock_redis, ttl_seconds=30)

        cache.set("P1", "L1", "0", JUNE_1, JUNE_5, {"a": 1}, ttl_seconds=5)

        key, ttl, payload = mock_redis.setex.call_args.args
        assert ttl == 5
        assert json.loads(payload) == {"a": 1}

    def test_non_positive_ttl_skips_write(self, mock_redis):
        cache = AvailabilityCache(mock_redis, ttl_seconds=30)
        cache.set("P1", "L1", "0", JUNE_1, JUNE_5, {"a": 1}, ttl_seconds=0)
        mock_redis.setex.assert_not_called()

    def test_invalidate_bumps_version(self, mock_redis):
        cache = AvailabilityCache(mock_redis)
        cache.invalidate("P1", "L1")
        mock_redis.incr.assert_called_once_with(version_key("P1", "L1"))

    def test_key_contains_version(self, mock_redis):
        mock_redis.get.side_effect = lambda key: "3" if key == version_key("P1", "L1") else None
        cache = AvailabilityCache(mock_redis)

        version = cache.current_version("P1", "L1")
        cache.get("P1", "L1", version, JUNE_1, JUNE_5)

        assert version == "3"
        assert mock_redis.get.call_args.args[0].startswith("availability:P1:L1:v3:")

    def test_set_uses_given_version(self, mock_redis):
        """测试写缓存只用调用方读到的版本号，不再重新读取"""
        mock_redis.get.return_value = "7"
        cache = AvailabilityCache(mock_redis)

        cache.set("P1", "L1", "2", JUNE_1, JUNE_5, {"a": 1})

        mock_redis.get.assert_not_called()
        assert mock_redis.setex.call_args.args[0].startswith("availability:P1:L1:v2:")

    def test_missing_version_disables_cache(self, mock_redis):
        cache = AvailabilityCache(mock_redis)
        assert cache.get("P1", "L1", None, JUNE_1, JUNE_5) is None
        cache.set("P1", "L1", None, JUNE_1, JUNE_5, {"a": 1})
        mock_redis.setex.assert_not_called()

    def test_redis_errors_are_swallowed(self, mock_redis):
        """测试 Redis 故障时缓存退化为空操作"""
        mock_redis.get.side_effect = Exception("连接失败")
        mock_redis.incr.side_effect = Exception("连接失败")
        cache = AvailabilityCache(mock_redis)

        assert cache.current_version("P1", "L1") is None
        assert cache.get("P1", "L1", "0", JUNE_1, JUNE_5) is None
        cache.invalidate("P1", "L1")


class TestProductCatalog:
    """商品目录测试类"""

    def test_static_catalog(self):
        catalog = StaticProductCatalog(inactive_products=["P2"], inactive_locations=["L9"])
        assert catalog.get_status("P1", "L1").active
        assert catalog.get_status("P2", "L1").reason == "product_inactive"
        assert catalog.get_status("P1", "L9").reason == "location_inactive"

    def test_redis_catalog_missing_keys_are_active(self, mock_redis):
        catalog = RedisProductCatalog(mock_redis)
        assert catalog.get_status("P1", "L1").active
        mock_redis.mget.assert_called_once_with(
            ["catalog:product:P1:status", "catalog:location:L1:status"]
        )

    @pytest.mark.parametrize("values,reason", [
        (["inactive", None], "product_inactive"),
        (["archived", "active"], "product_inactive"),
        (["active", "closed"], "location_inactive"),
    ])
    def test_redis_catalog_inactive(self, mock_redis, values, reason):
        mock_redis.mget.return_value = values
        status = RedisProductCatalog(mock_redis).get_status("P1", "L1")
        assert not status.active
        assert status.reason == reason

    def test_redis_catalog_unreachable_counts_as_active(self, mock_redis):
        """测试 Redis 连不上时商品按可售处理，不向上抛连接错误"""
        mock_redis.mget.side_effect = RedisConnectionError("连接失败")

        assert RedisProductCatalog(mock_redis).get_status("P1", "L1").active

    def test_hold_succeeds_when_catalog_redis_is_down(self, db_session, mock_redis, stock, clock):
        """测试 Redis 宕机时仍能创建预占"""
        mock_redis.mget.side_effect = RedisConnectionError("连接失败")
        stock(total=2)
        service = AvailabilityService(db_session, catalog=RedisProductCatalog(mock_redis), clock=clock)

        hold = service.create_hold("alice", "P1", "L1", 1, JUNE_1, JUNE_5)

        assert hold.quantity == 1

    def test_set_status(self, mock_redis):
        catalog = RedisProductCatalog(mock_redis)
        catalog.set_product_status("P1", "inactive")
        mock_redis.set.assert_called_once_with("catalog:product:P1:status", "inactive")


class TestEventPublisher:
    """事件发布测试类"""

    def test_publish_to_channel(self, mock_redis):
        """测试按事件类型发布到对应频道"""
        publisher = RedisEventPublisher(mock_redis, channel_prefix="rental:")

        publisher.publish(hold_event())

        channel, payload = mock_redis.publish.call_args.args
        assert channel == "rental:hold.created"
        body = json.loads(payload)
        assert body["hold_id"] == 7
        assert body["event_type"] == "hold.created"

    def test_publish_failure_is_swallowed(self, mock_redis):
        """测试发布失败不向上抛"""
        mock_redis.publish.side_effect = Exception("连接失败")
        publisher = RedisEventPublisher(mock_redis)

        publisher.publish(hold_event())

    def test_publish_many(self, mock_redis):
        publisher = RedisEventPublisher(mock_redis)
        publisher.publish_many([hold_event(hold_id=1), hold_event(hold_id=2)])
        assert mock_redis.publish.call_count == 2

    def test_null_publisher(self):
        NullEventPublisher().publish(hold_event())


class TestBookingNumbers:
    """订单号生成测试类"""

    def test_first_number_of_the_day(self, db_session):
        generator = BookingNumberGenerator(db_session, clock=FakeClock())
        assert generator.next_number() == "BK3005010001"

    def test_continues_from_database(self, db_session):
        """测试无 Redis 时按当天最大订单号续号"""
        db_session.add(Booking(
            booking_number="BK3005010007",
            customer_id="alice",
            product_id="P1",
            location_id="L1",
            quantity=1,
            start_date=JUNE_1,
            end_date=JUNE_5,
            status=BookingStatus.PENDING,
        ))
        db_session.commit()

        generator = BookingNumberGenerator(db_session, clock=FakeClock())
        assert generator.next_number() == "BK3005010008"

    def test_sequence_from_redis(self, db_session, mock_redis):
        """测试有 Redis 时用当日计数器"""
        mock_redis.incr.return_value = 42
        generator = BookingNumberGenerator(db_session, mock_redis, FakeClock())

        assert generator.next_number() == "BK3005010042"
        mock_redis.incr.assert_called_once_with("booking:seq:300501")
        mock_redis.expire.assert_not_called()

    def test_first_redis_sequence_sets_expiry(self, db_session, mock_redis):
        mock_redis.incr.return_value = 1
        generator = BookingNumberGenerator(db_session, mock_redis, FakeClock())

        generator.next_number()

        mock_redis.expire.assert_called_once()

    def test_fallback_on_error(self, db_session, mock_redis):
        """测试 Redis 出错时退回时间戳订单号"""
        mock_redis.incr.side_effect = Exception("连接失败")
        generator = BookingNumberGenerator(db_session, mock_redis, FakeClock())

        number = generator.next_number()

        assert number.startswith("BK300501")
        assert len(number) == 17

    def test_fallback_when_sequence_exhausted(self, db_session, mock_redis):
        mock_redis.incr.return_value = 10000
        generator = BookingNumberGenerator(db_session, mock_redis, FakeClock())

        with patch("app.services.booking_numbers.time.time", return_value=1234.567891), \
                patch("app.services.booking_numbers.random.randrange", return_value=7):
            assert generator.next_number() == "BK300501234567007"

    def test_fallback_numbers_differ_within_same_millisecond(self, db_session):
        """测试同一毫秒内退回的订单号也带随机后缀"""
        generator = BookingNumberGenerator(db_session, clock=FakeClock())

        with patch("app.services.booking_numbers.time.time", return_value=1234.567891), \
                patch("app.services.booking_numbers.random.randrange", side_effect=[1, 2]):
            assert generator.fallback() != generator.fallback()
