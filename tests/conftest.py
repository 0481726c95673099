"""测试配置和 fixtures"""
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from redis import Redis
from redlock import Redlock

import app.models  # noqa: F401  注册所有模型
from app.db.base import Base
from app.events.publisher import EventPublisher
from app.models.bookings import Booking, BookingStatus
from app.models.inventory_records import InventoryRecord
from app.services.availability_service import AvailabilityService
from app.services.booking_service import BookingService
from app.services.catalog import StaticProductCatalog


NOW = datetime(2030, 5, 1, 9, 0, tzinfo=timezone.utc)
JUNE_1 = datetime(2030, 6, 1, tzinfo=timezone.utc)
JUNE_5 = datetime(2030, 6, 5, tzinfo=timezone.utc)
JUNE_8 = datetime(2030, 6, 8, tzinfo=timezone.utc)


class FakeClock:
    """可手动拨动的时钟"""

    def __init__(self, now: datetime = NOW):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def db_session():
    """SQLite 内存库会话"""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.incr.return_value = 1
    redis_mock.mget.return_value = [None, None]
    redis_mock.publish.return_value = 1
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return Mock(spec=EventPublisher)


@pytest.fixture
def catalog():
    return StaticProductCatalog()


@pytest.fixture
def service(db_session, publisher, catalog, clock):
    """不带 Redis 的可用量服务（锁退化为空操作）"""
    return AvailabilityService(db_session, publisher=publisher, catalog=catalog, clock=clock)


@pytest.fixture
def booking_service(service):
    return BookingService(service.db, availability=service)


@pytest.fixture
def stock(db_session):
    """上架库存：stock("P1", "L1", 5)"""

    def _stock(product_id: str = "P1", location_id: str = "L1", total: int = 5) -> InventoryRecord:
        record = InventoryRecord(
            product_id=product_id,
            location_id=location_id,
            total_quantity=total,
            version=0,
        )
        db_session.add(record)
        db_session.commit()
        return record

    return _stock


@pytest.fixture
def add_booking(db_session):
    """直接落一条订单（绕过服务层，用来构造已有占用）"""
    counter = {"n": 0}

    def _add(
        status: BookingStatus = BookingStatus.CONFIRMED,
        quantity: int = 1,
        start_date: datetime = JUNE_1,
        end_date: datetime = JUNE_5,
        customer_id: str = "someone",
        product_id: str = "P1",
        location_id: str = "L1",
    ) -> Booking:
        counter["n"] += 1
        booking = Booking(
            booking_number=f"SEED{counter['n']:04d}",
            customer_id=customer_id,
            product_id=product_id,
            location_id=location_id,
            quantity=quantity,
            start_date=start_date,
            end_date=end_date,
            status=status,
        )
        db_session.add(booking)
        db_session.commit()
        return booking

    return _add
