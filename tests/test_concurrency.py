"""并发预占测试：同一 key 上的并发请求不能超卖"""
import threading
from collections import defaultdict

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from app.core.exceptions import CapacityConflictError
from app.db.base import Base
from app.models.holds import Hold, HoldStatus
from app.models.inventory_records import InventoryRecord
from app.services.availability_service import AvailabilityService

from conftest import JUNE_1, JUNE_5, FakeClock


class ThreadRedlock:
    """进程内的 Redlock 替身：每个 resource 一把线程锁"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)
        self.acquired = []

    def lock(self, resource, ttl):
        with self._guard:
            lock = self._locks[resource]
        if not lock.acquire(timeout=10):
            return False
        self.acquired.append(resource)
        return (resource, lock)

    def unlock(self, handle):
        handle[1].release()


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        engine.dispose()


def seed(factory, total):
    db = factory()
    try:
        db.add(InventoryRecord(product_id="P1", location_id="L1", total_quantity=total, version=0))
        db.commit()
    finally:
        db.close()


def race(factory, rlock, users, quantity=1):
    """每个用户一个线程，同时抢同一区间"""
    clock = FakeClock()
    barrier = threading.Barrier(len(users))
    outcomes = {}

    def worker(user_id):
        db = factory()
        try:
            service = AvailabilityService(db, rlock=rlock, clock=clock)
            barrier.wait()
            try:
                service.create_hold(user_id, "P1", "L1", quantity, JUNE_1, JUNE_5)
                outcomes[user_id] = "ok"
            except CapacityConflictError:
                outcomes[user_id] = "conflict"
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def held_total(factory):
    db = factory()
    try:
        return db.execute(
            select(func.coalesce(func.sum(Hold.quantity), 0)).where(Hold.status == HoldStatus.ACTIVE)
        ).scalar_one()
    finally:
        db.close()


class TestConcurrentHolds:
    """并发预占测试类"""

    def test_last_unit_only_one_wins(self, session_factory):
        """测试两个请求抢最后一件，恰好一个成功一个冲突"""
        seed(session_factory, total=1)
        rlock = ThreadRedlock()

        outcomes = race(session_factory, rlock, ["alice", "bob"])

        assert sorted(outcomes.values()) == ["conflict", "ok"]
        assert held_total(session_factory) == 1

    def test_many_requests_never_oversell(self, session_factory):
        """测试 10 个请求抢 5 件库存"""
        seed(session_factory, total=5)
        rlock = ThreadRedlock()

        outcomes = race(session_factory, rlock, [f"user-{i}" for i in range(10)])

        assert list(outcomes.values()).count("ok") == 5
        assert list(outcomes.values()).count("conflict") == 5
        assert held_total(session_factory) == 5
        assert set(rlock.acquired) == {"lock:inventory:P1:L1"}
