"""依赖注入单元测试"""
import pytest
from unittest.mock import Mock, patch
from sqlalchemy.orm import Session
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redlock import Redlock

from app.core.dependencies import (
    Caller,
    get_availability_service,
    get_booking_service,
    get_caller,
    get_catalog,
    get_db,
    get_event_publisher,
    get_redis,
    get_redlock,
)
from app.events.publisher import NullEventPublisher, RedisEventPublisher
from app.services.availability_service import AvailabilityService
from app.services.booking_service import BookingService
from app.services.catalog import RedisProductCatalog, StaticProductCatalog


class TestDependencies:
    """依赖注入测试类"""

    def test_get_db(self):
        """测试数据库会话依赖"""
        with patch('app.core.dependencies.SessionLocal') as mock_session_local:
            db_mock = Mock(spec=Session)
            mock_session_local.return_value = db_mock

            gen = get_db()
            db = next(gen)

            assert db == db_mock
            mock_session_local.assert_called_once()

            try:
                gen.throw(GeneratorExit)
            except GeneratorExit:
                pass
            db_mock.close.assert_called_once()

    def test_get_redis_success(self):
        """测试 Redis 连接成功"""
        with patch('app.core.dependencies.redis_client') as mock_redis_client:
            mock_redis_client.ping.return_value = True

            assert get_redis() == mock_redis_client
            mock_redis_client.ping.assert_called_once()

    def test_get_redis_failure(self):
        """测试 Redis 连接失败时返回 None"""
        with patch('app.core.dependencies.redis_client') as mock_redis_client:
            mock_redis_client.ping.side_effect = RedisConnectionError("连接失败")

            assert get_redis() is None

    def test_get_redlock_success(self):
        """测试 Redlock 有服务器配置"""
        with patch('app.core.dependencies.redlock') as mock_redlock:
            mock_redlock.servers = [Mock()]

            assert get_redlock(Mock(spec=Redis)) == mock_redlock

    def test_get_redlock_failure(self):
        """测试 Redlock 无服务器配置时返回 None"""
        with patch('app.core.dependencies.redlock') as mock_redlock:
            mock_redlock.servers = []

            assert get_redlock(Mock(spec=Redis)) is None

    def test_get_redlock_without_redis(self):
        """测试 Redis 不可用时不加分布式锁，只靠数据库行锁"""
        with patch('app.core.dependencies.redlock') as mock_redlock:
            mock_redlock.servers = [Mock()]

            assert get_redlock(None) is None

    def test_redis_down_degrades_dependencies(self):
        """测试 Redis 宕机时整条依赖链退化为空发布器和固定名单"""
        with patch('app.core.dependencies.redis_client') as mock_redis_client:
            mock_redis_client.ping.side_effect = RedisConnectionError("连接失败")

            redis = get_redis()
            assert isinstance(get_event_publisher(redis), NullEventPublisher)
            assert isinstance(get_catalog(redis), StaticProductCatalog)
            assert get_redlock(redis) is None

    def test_event_publisher_without_redis(self):
        assert isinstance(get_event_publisher(None), NullEventPublisher)

    def test_event_publisher_with_redis(self):
        publisher = get_event_publisher(Mock(spec=Redis))
        assert isinstance(publisher, RedisEventPublisher)

    def test_catalog(self):
        assert isinstance(get_catalog(None), StaticProductCatalog)
        assert isinstance(get_catalog(Mock(spec=Redis)), RedisProductCatalog)

    def test_get_availability_service(self):
        """测试可用量服务依赖注入"""
        db_mock = Mock(spec=Session)
        redis_mock = Mock(spec=Redis)
        redlock_mock = Mock(spec=Redlock)

        service = get_availability_service(
            db_mock, redis_mock, redlock_mock, NullEventPublisher(), StaticProductCatalog()
        )

        assert isinstance(service, AvailabilityService)
        assert service.db == db_mock
        assert service.redis == redis_mock
        assert service.rlock == redlock_mock

    def test_get_availability_service_partial_deps(self):
        """测试 Redis / Redlock 不可用时的服务创建"""
        db_mock = Mock(spec=Session)

        service = get_availability_service(db_mock, None, None, NullEventPublisher(), StaticProductCatalog())

        assert service.redis is None
        assert service.rlock is None

    def test_get_booking_service_shares_session(self):
        """测试订单服务与可用量服务共用会话和锁"""
        redlock_mock = Mock(spec=Redlock)
        availability = AvailabilityService(Mock(spec=Session), rlock=redlock_mock)

        service = get_booking_service(availability)

        assert isinstance(service, BookingService)
        assert service.db is availability.db
        assert service.availability is availability
        assert service.rlock is redlock_mock

    @pytest.mark.parametrize("role,is_staff", [
        (None, False),
        ("customer", False),
        ("staff", True),
        ("manager", True),
        ("super_admin", True),
    ])
    def test_caller_roles(self, role, is_staff):
        assert get_caller("alice", role).is_staff is is_staff

    def test_caller(self):
        caller = Caller("alice")
        assert caller.user_id == "alice"
        assert caller.role is None
