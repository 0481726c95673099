"""可用量仲裁服务（预占 Hold 的创建 / 延长 / 取消 / 转订单 / 过期清理）

可用量从不落库，每次都由
    总库存 - 重叠的占用中订单数量 - 重叠的有效预占数量
推导得到。“有效预占”= status 为 active 且 expires_at 晚于当前时间，
所以即使过期清理任务没跑，过期预占也不会再占库存。
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
import logging
import math
from typing import Callable, Dict, List, Optional

from redis import Redis
from redlock import Redlock
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    BoundsError,
    CapacityConflictError,
    DuplicateHoldError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    ValidationError,
)
from app.events.publisher import EventPublisher, NullEventPublisher
from app.models.bookings import Booking, capacity_statuses
from app.models.holds import Hold, HoldSource, HoldStatus
from app.models.inventory_logs import ChangeType, InventoryLog
from app.models.inventory_records import InventoryRecord
from app.schemas.events import EventType, HoldEvent, InventoryChangedEvent
from app.services.availability_cache import AvailabilityCache
from app.services.catalog import ProductCatalog, StaticProductCatalog
from app.services.inventory_ledger import InventoryLedger
from app.services.locking import inventory_lock
from app.services.overlap import as_utc, overlap_clause, utcnow

logger = logging.getLogger(__name__)

NOT_STOCKED = "not_stocked_at_location"

MIN_EXTENSION_MINUTES = 1
MAX_EXTENSION_STEP_MINUTES = 30


@dataclass
class AvailabilityResult:
    product_id: str
    location_id: str
    start_date: datetime
    end_date: datetime
    available_quantity: int
    total_stock: int
    booked_quantity: int
    held_quantity: int
    overlapping_bookings: int = 0
    active_holds: int = 0
    reason: Optional[str] = None
    # 计入的预占中最早的过期时间，用于限制缓存 TTL
    earliest_hold_expiry: Optional[datetime] = field(default=None, repr=False)

    @property
    def available(self) -> bool:
        return self.available_quantity > 0

    def to_cache(self) -> dict:
        data = asdict(self)
        data.pop("earliest_hold_expiry")
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data

    @classmethod
    def from_cache(cls, data: dict) -> "AvailabilityResult":
        data = dict(data)
        data["start_date"] = datetime.fromisoformat(data["start_date"])
        data["end_date"] = datetime.fromisoformat(data["end_date"])
        return cls(**data)


class AvailabilityService:
    """可用量仲裁核心服务"""

    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        rlock: Redlock = None,
        publisher: EventPublisher = None,
        catalog: ProductCatalog = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.redis = redis
        self.rlock = rlock
        self.publisher = publisher or NullEventPublisher()
        self.catalog = catalog or StaticProductCatalog()
        self.clock = clock
        self.ledger = InventoryLedger(db)
        self.cache = AvailabilityCache(redis, settings.AVAILABILITY_CACHE_TTL_SECONDS)

    def now(self) -> datetime:
        return as_utc(self.clock())

    # ==================== 校验 ====================

    @staticmethod
    def validate_interval(start_date: datetime, end_date: datetime):
        if not isinstance(start_date, datetime) or not isinstance(end_date, datetime):
            raise ValidationError("开始和结束时间必须是合法的日期时间")
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if start_date >= end_date:
            raise ValidationError(
                "结束时间必须晚于开始时间",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
        return start_date, end_date

    @staticmethod
    def validate_quantity(quantity) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("数量必须是大于 0 的整数", quantity=quantity)
        return quantity

    def ensure_active(self, hold: Hold) -> None:
        """extend / cancel / convert 前检查预占仍然有效"""
        if hold.status != HoldStatus.ACTIVE:
            raise StateTransitionError(
                f"预占已不再有效（当前状态：{hold.status.value}）",
                hold_id=hold.id,
                current_status=hold.status.value,
            )
        if as_utc(hold.expires_at) <= self.now():
            raise StateTransitionError(
                "预占已过期，不再有效",
                hold_id=hold.id,
                current_status=HoldStatus.EXPIRED.value,
                expires_at=as_utc(hold.expires_at).isoformat(),
            )

    # ==================== 可用量计算 ====================

    def _booked(self, product_id, location_id, start_date, end_date, exclude_booking_id=None):
        statuses = capacity_statuses(settings.OVERDUE_OCCUPIES_CAPACITY)
        stmt = select(
            func.coalesce(func.sum(Booking.quantity), 0),
            func.count(Booking.id),
        ).where(
            Booking.product_id == product_id,
            Booking.location_id == location_id,
            Booking.status.in_(list(statuses)),
            overlap_clause(Booking.start_date, Booking.end_date, start_date, end_date),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        quantity, count = self.db.execute(stmt).one()
        return int(quantity), int(count)

    def _held(self, product_id, location_id, start_date, end_date, now, exclude_hold_id=None):
        stmt = select(
            func.coalesce(func.sum(Hold.quantity), 0),
            func.count(Hold.id),
            func.min(Hold.expires_at),
        ).where(
            Hold.product_id == product_id,
            Hold.location_id == location_id,
            Hold.status == HoldStatus.ACTIVE,
            Hold.expires_at > now,
            overlap_clause(Hold.start_date, Hold.end_date, start_date, end_date),
        )
        if exclude_hold_id is not None:
            stmt = stmt.where(Hold.id != exclude_hold_id)
        quantity, count, earliest = self.db.execute(stmt).one()
        return int(quantity), int(count), (as_utc(earliest) if earliest else None)

    def calculate(
        self,
        record: Optional[InventoryRecord],
        product_id: str,
        location_id: str,
        start_date: datetime,
        end_date: datetime,
        exclude_hold_id: Optional[int] = None,
        exclude_booking_id: Optional[int] = None,
    ) -> AvailabilityResult:
        """按给定台账记录计算区间可用量（不加锁，调用方决定是否已持锁）"""
        if record is None:
            return AvailabilityResult(
                product_id=product_id,
                location_id=location_id,
                start_date=start_date,
                end_date=end_date,
                available_quantity=0,
                total_stock=0,
                booked_quantity=0,
                held_quantity=0,
                reason=NOT_STOCKED,
            )

        booked, booking_count = self._booked(
            product_id, location_id, start_date, end_date, exclude_booking_id
        )
        held, hold_count, earliest = self._held(
            product_id, location_id, start_date, end_date, self.now(), exclude_hold_id
        )
        return AvailabilityResult(
            product_id=product_id,
            location_id=location_id,
            start_date=start_date,
            end_date=end_date,
            available_quantity=max(0, record.total_quantity - booked - held),
            total_stock=record.total_quantity,
            booked_quantity=booked,
            held_quantity=held,
            overlapping_bookings=booking_count,
            active_holds=hold_count,
            earliest_hold_expiry=earliest,
        )

    def compute_availability(
        self,
        product_id: str,
        location_id: str,
        start_date: datetime,
        end_date: datetime,
        use_cache: bool = False,
    ) -> AvailabilityResult:
        """查询区间可用量（只读，可并发调用）

        结果只代表某一时刻的快照，不保证随后的 create_hold 一定成功。
        """
        start_date, end_date = self.validate_interval(start_date, end_date)

        version = None
        if use_cache:
            version = self.cache.current_version(product_id, location_id)
            cached = self.cache.get(product_id, location_id, version, start_date, end_date)
            if cached is not None:
                return AvailabilityResult.from_cache(cached)

        record = self.ledger.get_record(product_id, location_id)
        result = self.calculate(record, product_id, location_id, start_date, end_date)

        if use_cache:
            ttl = None
            if result.earliest_hold_expiry is not None:
                ttl = int((result.earliest_hold_expiry - self.now()).total_seconds())
            self.cache.set(
                product_id, location_id, version, start_date, end_date, result.to_cache(), ttl
            )

        return result

    # ==================== 台账 ====================

    def restock(
        self,
        product_id: str,
        location_id: str,
        total_quantity: int,
        min_quantity: Optional[int] = None,
        max_quantity: Optional[int] = None,
        operator: Optional[str] = None,
    ) -> InventoryRecord:
        """上架或调整总库存

        与预占共用同一把锁；总量下调后已有预占/订单不受影响，
        只是后续的可用量会变少（可能为 0）。
        """
        with inventory_lock(self.rlock, product_id, location_id):
            try:
                record = self.ledger.set_total_quantity(
                    product_id,
                    location_id,
                    total_quantity,
                    min_quantity=min_quantity,
                    max_quantity=max_quantity,
                    operator=operator,
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        self.cache.invalidate(product_id, location_id)
        self.publisher.publish(InventoryChangedEvent(
            event_type=EventType.INVENTORY_CHANGED,
            product_id=product_id,
            location_id=location_id,
            quantity=total_quantity,
            reason="restock",
        ))
        return record

    # ==================== 预占 ====================

    def create_hold(
        self,
        user_id: str,
        product_id: str,
        location_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        session_meta: Optional[Dict[str, str]] = None,
    ) -> Hold:
        """创建预占（防超卖核心）

        重新计算可用量与插入预占在同一把 product+location 锁和同一个
        事务内完成，数据库层再对台账行加 FOR UPDATE。
        """
        quantity = self.validate_quantity(quantity)
        start_date, end_date = self.validate_interval(start_date, end_date)
        if start_date < self.now():
            raise ValidationError("开始时间不能早于当前时间", start_date=start_date.isoformat())

        status = self.catalog.get_status(product_id, location_id)
        if not status.active:
            raise ValidationError("商品当前不可预订", product_id=product_id, reason=status.reason)

        session_meta = session_meta or {}

        with inventory_lock(self.rlock, product_id, location_id):
            try:
                record = self.ledger.get_record(product_id, location_id, for_update=True)
                if record is None:
                    raise ValidationError(
                        "该门店没有此商品库存",
                        product_id=product_id,
                        location_id=location_id,
                        reason=NOT_STOCKED,
                    )

                availability = self.calculate(record, product_id, location_id, start_date, end_date)
                if quantity > availability.available_quantity:
                    raise CapacityConflictError(
                        f"库存不足，所选日期仅剩 {availability.available_quantity} 件可用",
                        available=availability.available_quantity,
                        requested=quantity,
                    )

                now = self.now()
                existing = self.db.execute(
                    select(Hold.id).where(
                        Hold.user_id == user_id,
                        Hold.product_id == product_id,
                        Hold.location_id == location_id,
                        Hold.status == HoldStatus.ACTIVE,
                        Hold.expires_at > now,
                        overlap_clause(Hold.start_date, Hold.end_date, start_date, end_date),
                    ).limit(1)
                ).scalar_one_or_none()
                if existing is not None:
                    raise DuplicateHoldError(
                        "您在该日期范围内已有此商品的有效预占",
                        existing_hold_id=existing,
                    )

                hold = Hold(
                    user_id=user_id,
                    product_id=product_id,
                    location_id=location_id,
                    quantity=quantity,
                    start_date=start_date,
                    end_date=end_date,
                    status=HoldStatus.ACTIVE,
                    created_at=now,
                    expires_at=now + timedelta(minutes=settings.HOLD_DURATION_MINUTES),
                    session_id=session_meta.get("session_id"),
                    user_agent=session_meta.get("user_agent"),
                    ip_address=session_meta.get("ip_address"),
                    source=self._source_of(session_meta),
                    cart_id=session_meta.get("cart_id"),
                    referrer=session_meta.get("referrer"),
                )
                self.db.add(hold)
                self.db.flush()

                self.db.add(InventoryLog(
                    product_id=product_id,
                    location_id=location_id,
                    hold_id=hold.id,
                    change_type=ChangeType.HOLD,
                    quantity=-quantity,
                    available_after=availability.available_quantity - quantity,
                    operator=user_id,
                    source="availability_engine",
                ))

                self.db.commit()
                logger.info(
                    f"创建预占成功: hold_id={hold.id}, user_id={user_id}, product_id={product_id}, "
                    f"location_id={location_id}, quantity={quantity}"
                )

            except Exception as e:
                self.db.rollback()
                logger.error(f"创建预占失败: {str(e)}")
                raise

        self.cache.invalidate(product_id, location_id)
        self.publisher.publish(HoldEvent(
            event_type=EventType.HOLD_CREATED,
            product_id=product_id,
            location_id=location_id,
            quantity=quantity,
            start_date=start_date,
            end_date=end_date,
            hold_id=hold.id,
            user_id=user_id,
            expires_at=as_utc(hold.expires_at),
        ))
        return hold

    @staticmethod
    def _source_of(session_meta: Dict[str, str]) -> HoldSource:
        source = session_meta.get("source")
        if source:
            try:
                return HoldSource(source)
            except ValueError:
                raise ValidationError("未知的预占来源", source=source)
        if "Mobile" in (session_meta.get("user_agent") or ""):
            return HoldSource.MOBILE
        return HoldSource.WEB

    def get_hold(self, hold_id: int, for_update: bool = False) -> Hold:
        stmt = select(Hold).where(Hold.id == hold_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        hold = self.db.execute(stmt).scalar_one_or_none()
        if hold is None:
            raise NotFoundError("预占不存在", hold_id=hold_id)
        return hold

    def extend_hold(self, hold_id: int, requester_id: str, additional_minutes: int) -> Hold:
        """延长预占，总时长（expires_at - created_at）不能超过上限；不重新校验库存"""
        if (
            isinstance(additional_minutes, bool)
            or not isinstance(additional_minutes, int)
            or not MIN_EXTENSION_MINUTES <= additional_minutes <= MAX_EXTENSION_STEP_MINUTES
        ):
            raise ValidationError(
                f"延长时间必须在 {MIN_EXTENSION_MINUTES} 到 {MAX_EXTENSION_STEP_MINUTES} 分钟之间",
                requested_minutes=additional_minutes,
            )

        try:
            hold = self.get_hold(hold_id, for_update=True)
            if hold.user_id != requester_id:
                raise PermissionDeniedError("只能延长自己的预占", hold_id=hold_id)
            self.ensure_active(hold)

            max_minutes = settings.MAX_HOLD_EXTENSION_MINUTES
            current = as_utc(hold.expires_at) - as_utc(hold.created_at)
            if current + timedelta(minutes=additional_minutes) > timedelta(minutes=max_minutes):
                raise BoundsError(
                    f"预占总时长不能超过 {max_minutes} 分钟",
                    max_minutes=max_minutes,
                    current_minutes=math.ceil(current.total_seconds() / 60),
                    requested_minutes=additional_minutes,
                )

            hold.expires_at = as_utc(hold.expires_at) + timedelta(minutes=additional_minutes)
            self.db.commit()
            logger.info(f"延长预占成功: hold_id={hold_id}, minutes={additional_minutes}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"延长预占失败: {str(e)}")
            raise

        # 过期时间变了，缓存 TTL 也要跟着变
        self.cache.invalidate(hold.product_id, hold.location_id)
        return hold

    def cancel_hold(
        self,
        hold_id: int,
        requester_id: str,
        reason: Optional[str] = None,
        is_staff: bool = False,
    ) -> Hold:
        try:
            hold = self.get_hold(hold_id, for_update=True)
            if hold.user_id != requester_id and not is_staff:
                raise PermissionDeniedError("只能取消自己的预占", hold_id=hold_id)
            self.ensure_active(hold)

            hold.status = HoldStatus.CANCELLED
            hold.cancelled_at = self.now()
            hold.cancelled_by = requester_id
            hold.cancellation_reason = reason

            self.db.add(InventoryLog(
                product_id=hold.product_id,
                location_id=hold.location_id,
                hold_id=hold.id,
                change_type=ChangeType.RELEASE,
                quantity=hold.quantity,
                operator=requester_id,
                source="availability_engine",
            ))
            self.db.commit()
            logger.info(f"取消预占成功: hold_id={hold_id}, by={requester_id}")
        except Exception as e:
            self.db.rollback()
            logger.error(f"取消预占失败: {str(e)}")
            raise

        self.cache.invalidate(hold.product_id, hold.location_id)
        self.publisher.publish(self._released_event(hold, "cancelled"))
        return hold

    def convert_hold_to_booking(self, hold: Hold, booking: Booking) -> Hold:
        """预占转订单，只在订单创建事务内调用，不提交"""
        self.ensure_active(hold)
        if hold.user_id != booking.customer_id:
            raise PermissionDeniedError("只能用自己的预占下单", hold_id=hold.id)

        hold.status = HoldStatus.CONVERTED
        hold.converted_to_booking_id = booking.id
        hold.converted_at = self.now()

        self.db.add(InventoryLog(
            product_id=hold.product_id,
            location_id=hold.location_id,
            hold_id=hold.id,
            booking_id=booking.id,
            change_type=ChangeType.CONVERT,
            quantity=hold.quantity,
            operator=booking.customer_id,
            source="booking_service",
        ))
        return hold

    def list_user_holds(self, user_id: str, status: Optional[HoldStatus] = HoldStatus.ACTIVE, limit: int = 50) -> List[Hold]:
        stmt = select(Hold).where(Hold.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Hold.status == status)
        stmt = stmt.order_by(Hold.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def remaining_minutes(self, hold: Hold) -> int:
        if hold.status != HoldStatus.ACTIVE:
            return 0
        remaining = (as_utc(hold.expires_at) - self.now()).total_seconds()
        return max(0, math.ceil(remaining / 60))

    def hold_statistics(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> dict:
        """按状态统计预占数量及转化率（百分比）"""
        stmt = select(Hold.status, func.count(Hold.id), func.coalesce(func.sum(Hold.quantity), 0))
        if since is not None:
            stmt = stmt.where(Hold.created_at >= as_utc(since))
        if until is not None:
            stmt = stmt.where(Hold.created_at <= as_utc(until))
        stmt = stmt.group_by(Hold.status)

        stats = {status.value: 0 for status in HoldStatus}
        total_quantity = 0
        for status, count, quantity in self.db.execute(stmt).all():
            stats[HoldStatus(status).value] = int(count)
            total_quantity += int(quantity)

        total = sum(stats.values())
        stats["total_quantity"] = total_quantity
        stats["conversion_rate"] = (stats[HoldStatus.CONVERTED.value] / total * 100) if total else 0.0
        return stats

    # ==================== 过期清理 ====================

    def count_expired_holds(self) -> int:
        return self.db.execute(
            select(func.count(Hold.id)).where(
                Hold.status == HoldStatus.ACTIVE,
                Hold.expires_at <= self.now(),
            )
        ).scalar_one()

    def expire_holds(self, batch_size: Optional[int] = None) -> int:
        """把已过期但仍为 active 的预占置为 expired

        只是单向状态翻转，重复执行无副作用；读路径本来就按 expires_at 过滤，
        所以这里只负责清理和通知，不影响正确性。批次失败时已提交的批次保留，
        剩余的等下一轮。

        Returns:
            本次置为过期的预占数量
        """
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        total_expired = 0

        while True:
            try:
                now = self.now()
                # skip_locked 防止多个 worker 抢同一批
                expired_holds = self.db.execute(
                    select(Hold)
                    .where(
                        Hold.status == HoldStatus.ACTIVE,
                        Hold.expires_at <= now,
                    )
                    .order_by(Hold.expires_at)
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                ).scalars().all()

                if not expired_holds:
                    break

                logger.info(f"本次清理 {len(expired_holds)} 条过期预占")

                for hold in expired_holds:
                    hold.status = HoldStatus.EXPIRED
                    hold.expired_at = now
                    self.db.add(InventoryLog(
                        product_id=hold.product_id,
                        location_id=hold.location_id,
                        hold_id=hold.id,
                        change_type=ChangeType.EXPIRE,
                        quantity=hold.quantity,
                        operator="system_sweeper",
                        source="sweeper",
                    ))

                self.db.commit()
                total_expired += len(expired_holds)

                keys = {(h.product_id, h.location_id) for h in expired_holds}
                for product_id, location_id in keys:
                    self.cache.invalidate(product_id, location_id)
                self.publisher.publish_many(
                    [self._released_event(hold, "expired") for hold in expired_holds]
                )

                if len(expired_holds) < batch_size:
                    break

            except Exception as e:
                logger.error(f"过期预占清理出错，等待下一轮: {str(e)}")
                self.db.rollback()
                break

        logger.info(f"清理任务完成，共置为过期 {total_expired} 条预占")
        return total_expired

    @staticmethod
    def _released_event(hold: Hold, reason: str) -> HoldEvent:
        return HoldEvent(
            event_type=EventType.HOLD_RELEASED,
            product_id=hold.product_id,
            location_id=hold.location_id,
            quantity=hold.quantity,
            start_date=as_utc(hold.start_date),
            end_date=as_utc(hold.end_date),
            hold_id=hold.id,
            user_id=hold.user_id,
            expires_at=as_utc(hold.expires_at),
            reason=reason,
        )
