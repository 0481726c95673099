"""订单（硬预留）服务

订单创建、预占转订单和最终的库存复核在同一个事务、同一把
product+location 锁内完成；预占只保证优先权，不保证一定能下单。
"""

from contextlib import nullcontext
from datetime import datetime
import logging
from typing import Callable, List, Optional

from redis import Redis
from redlock import Redlock
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    CapacityConflictError,
    ContentionError,
    NotFoundError,
    PermissionDeniedError,
    StateTransitionError,
    ValidationError,
)
from app.events.publisher import EventPublisher
from app.models.bookings import (
    Booking,
    BookingStatus,
    BookingStatusHistory,
    can_transition,
    capacity_statuses,
)
from app.models.inventory_logs import ChangeType, InventoryLog
from app.schemas.events import BookingStatusEvent, EventType, InventoryChangedEvent
from app.services.availability_service import AvailabilityService, NOT_STOCKED
from app.services.booking_numbers import BookingNumberGenerator
from app.services.catalog import ProductCatalog
from app.services.locking import inventory_lock
from app.services.overlap import as_utc, utcnow

logger = logging.getLogger(__name__)

INITIAL_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class BookingService:
    def __init__(
        self,
        db: Session,
        redis: Redis = None,
        rlock: Redlock = None,
        publisher: EventPublisher = None,
        catalog: ProductCatalog = None,
        clock: Callable[[], datetime] = utcnow,
        availability: AvailabilityService = None,
    ):
        self.db = db
        self.availability = availability or AvailabilityService(
            db, redis=redis, rlock=rlock, publisher=publisher, catalog=catalog, clock=clock
        )
        self.rlock = self.availability.rlock
        self.publisher = self.availability.publisher
        self.numbers = BookingNumberGenerator(db, self.availability.redis, self.availability.clock)

    def now(self) -> datetime:
        return self.availability.now()

    @staticmethod
    def occupies(status: BookingStatus) -> bool:
        return status in capacity_statuses(settings.OVERDUE_OCCUPIES_CAPACITY)

    def get_booking(self, booking_id: int, for_update: bool = False) -> Booking:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        booking = self.db.execute(stmt).scalar_one_or_none()
        if booking is None:
            raise NotFoundError("订单不存在", booking_id=booking_id)
        return booking

    # ==================== 创建 ====================

    def create_booking(
        self,
        customer_id: str,
        product_id: str,
        location_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        status: BookingStatus = BookingStatus.PENDING,
        created_by: Optional[str] = None,
    ) -> Booking:
        """不经预占直接下单"""
        quantity = self.availability.validate_quantity(quantity)
        start_date, end_date = self.availability.validate_interval(start_date, end_date)
        if start_date < self.now():
            raise ValidationError("开始时间不能早于当前时间", start_date=start_date.isoformat())
        return self._create(
            customer_id, product_id, location_id, quantity, start_date, end_date,
            status=status, hold_id=None, created_by=created_by,
        )

    def create_booking_from_hold(
        self,
        hold_id: int,
        customer_id: str,
        status: BookingStatus = BookingStatus.PENDING,
    ) -> Booking:
        """结账：把预占转成订单，订单的商品、门店、租期和数量都取自预占"""
        hold = self.availability.get_hold(hold_id)
        return self._create(
            customer_id,
            hold.product_id,
            hold.location_id,
            hold.quantity,
            as_utc(hold.start_date),
            as_utc(hold.end_date),
            status=status,
            hold_id=hold.id,
            created_by=customer_id,
        )

    def _create(
        self,
        customer_id: str,
        product_id: str,
        location_id: str,
        quantity: int,
        start_date: datetime,
        end_date: datetime,
        status: BookingStatus,
        hold_id: Optional[int],
        created_by: Optional[str],
    ) -> Booking:
        status = self._parse_status(status)
        if status not in INITIAL_STATUSES:
            raise ValidationError(
                "订单只能以 pending 或 confirmed 状态创建",
                status=status.value,
            )

        with inventory_lock(self.rlock, product_id, location_id):
            try:
                record = self.availability.ledger.get_record(product_id, location_id, for_update=True)
                if record is None:
                    raise ValidationError(
                        "该门店没有此商品库存",
                        product_id=product_id,
                        location_id=location_id,
                        reason=NOT_STOCKED,
                    )

                hold = None
                if hold_id is not None:
                    hold = self.availability.get_hold(hold_id, for_update=True)
                    if hold.user_id != customer_id:
                        raise PermissionDeniedError("只能用自己的预占下单", hold_id=hold_id)
                    self.availability.ensure_active(hold)

                catalog_status = self.availability.catalog.get_status(product_id, location_id)
                if not catalog_status.active:
                    raise CapacityConflictError(
                        "商品当前不可预订",
                        available=0,
                        reason=catalog_status.reason,
                    )

                # 最终复核：排除正在转换的预占本身
                availability = self.availability.calculate(
                    record, product_id, location_id, start_date, end_date,
                    exclude_hold_id=hold.id if hold is not None else None,
                )
                if quantity > availability.available_quantity:
                    raise CapacityConflictError(
                        f"库存不足，所选日期仅剩 {availability.available_quantity} 件可用",
                        available=availability.available_quantity,
                        requested=quantity,
                    )

                now = self.now()
                booking = self._insert_booking(
                    customer_id=customer_id,
                    product_id=product_id,
                    location_id=location_id,
                    quantity=quantity,
                    start_date=start_date,
                    end_date=end_date,
                    status=status,
                    origin_hold_id=hold.id if hold is not None else None,
                    created_by=created_by,
                    updated_by=created_by,
                )

                self.db.add(BookingStatusHistory(
                    booking_id=booking.id,
                    status=status,
                    previous_status=None,
                    changed_at=now,
                    changed_by=created_by,
                    reason="created",
                ))

                if hold is not None:
                    self.availability.convert_hold_to_booking(hold, booking)
                else:
                    self.db.add(InventoryLog(
                        product_id=product_id,
                        location_id=location_id,
                        booking_id=booking.id,
                        change_type=ChangeType.BOOKING_STATUS,
                        quantity=-quantity if self.occupies(status) else 0,
                        available_after=availability.available_quantity - quantity,
                        operator=created_by,
                        source="booking_service",
                    ))

                self.db.commit()
                logger.info(
                    f"创建订单成功: booking_number={booking.booking_number}, customer_id={customer_id}, "
                    f"product_id={product_id}, quantity={quantity}, hold_id={hold_id}"
                )

            except Exception as e:
                self.db.rollback()
                logger.error(f"创建订单失败: {str(e)}")
                raise

        self.availability.cache.invalidate(product_id, location_id)
        self.publisher.publish(self._status_event(booking, None))
        if hold is not None or self.occupies(status):
            self.publisher.publish(InventoryChangedEvent(
                event_type=EventType.INVENTORY_CHANGED,
                product_id=product_id,
                location_id=location_id,
                quantity=quantity,
                start_date=start_date,
                end_date=end_date,
                booking_id=booking.id,
                reason="hold_converted" if hold is not None else "booking_created",
            ))
        return booking

    def _insert_booking(self, **fields) -> Booking:
        """插入订单；订单号撞唯一约束时换一个时间戳订单号重试一次

        流水号只在同一 product+location 的锁内串行，不同商品的订单
        可能拿到同一个号，用 SAVEPOINT 把失败限制在这一条 INSERT 上。
        """
        number = self.numbers.next_number()
        for attempt in range(2):
            booking = Booking(booking_number=number, **fields)
            try:
                with self.db.begin_nested():
                    self.db.add(booking)
                    self.db.flush()
                return booking
            except IntegrityError as e:
                if attempt:
                    raise ContentionError("订单号冲突，请稍后重试", booking_number=number) from e
                logger.warning(f"订单号冲突，改用时间戳订单号重试: {number}")
                number = self.numbers.fallback()

    # ==================== 状态流转 ====================

    @staticmethod
    def _parse_status(status) -> BookingStatus:
        try:
            return BookingStatus(status)
        except ValueError:
            raise ValidationError("未知的订单状态", status=status)

    def change_status(
        self,
        booking_id: int,
        new_status: BookingStatus,
        changed_by: Optional[str] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """按流转表变更订单状态

        从不占库存的状态进入占库存的状态（如 pending -> confirmed）时，
        要在锁内重新校验库存。
        """
        new_status = self._parse_status(new_status)
        booking = self.get_booking(booking_id)
        self._check_transition(booking, new_status)

        # 目标状态占库存时先拿锁，是否真要复核以锁内重读的状态为准
        locked = self.occupies(new_status)
        guard = (
            inventory_lock(self.rlock, booking.product_id, booking.location_id)
            if locked else nullcontext()
        )

        with guard:
            try:
                record = None
                if locked:
                    record = self.availability.ledger.get_record(
                        booking.product_id, booking.location_id, for_update=True
                    )
                booking = self.get_booking(booking_id, for_update=True)
                previous_status = booking.status
                self._check_transition(booking, new_status)
                needs_capacity = locked and not self.occupies(previous_status)

                if needs_capacity:
                    availability = self.availability.calculate(
                        record,
                        booking.product_id,
                        booking.location_id,
                        as_utc(booking.start_date),
                        as_utc(booking.end_date),
                        exclude_booking_id=booking.id,
                    )
                    if booking.quantity > availability.available_quantity:
                        raise CapacityConflictError(
                            f"库存不足，所选日期仅剩 {availability.available_quantity} 件可用",
                            available=availability.available_quantity,
                            requested=booking.quantity,
                        )

                now = self.now()
                booking.status = new_status
                booking.updated_by = changed_by
                if new_status == BookingStatus.PICKED_UP:
                    booking.actual_start_at = now
                elif new_status == BookingStatus.RETURNED:
                    booking.actual_end_at = now

                self._record_change(booking, previous_status, now, changed_by, reason, notes)
                self.db.commit()
                logger.info(
                    f"订单状态变更: booking_id={booking_id}, "
                    f"{previous_status.value} -> {new_status.value}, by={changed_by}"
                )

            except Exception as e:
                self.db.rollback()
                logger.error(f"订单状态变更失败: {str(e)}")
                raise

        self._after_status_change(booking, previous_status)
        return booking

    def _check_transition(self, booking: Booking, new_status: BookingStatus) -> None:
        if not can_transition(booking.status, new_status):
            raise StateTransitionError(
                f"订单状态不能从 {booking.status.value} 变更为 {new_status.value}",
                booking_id=booking.id,
                current_status=booking.status.value,
                target_status=new_status.value,
            )

    def _record_change(self, booking, previous_status, now, changed_by, reason=None, notes=None):
        self.db.add(BookingStatusHistory(
            booking_id=booking.id,
            status=booking.status,
            previous_status=previous_status,
            changed_at=now,
            changed_by=changed_by,
            reason=reason,
            notes=notes,
        ))

        moved = self.occupies(previous_status) != self.occupies(booking.status)
        if moved:
            delta = -booking.quantity if self.occupies(booking.status) else booking.quantity
        else:
            delta = 0
        self.db.add(InventoryLog(
            product_id=booking.product_id,
            location_id=booking.location_id,
            booking_id=booking.id,
            change_type=ChangeType.BOOKING_STATUS,
            quantity=delta,
            operator=changed_by,
            source="booking_service",
        ))

    def _after_status_change(self, booking: Booking, previous_status: BookingStatus) -> None:
        capacity_moved = self.occupies(previous_status) != self.occupies(booking.status)
        if capacity_moved:
            # 可用量是推导值，无需回补计数，只需让外部缓存失效
            self.availability.cache.invalidate(booking.product_id, booking.location_id)
            self.publisher.publish(InventoryChangedEvent(
                event_type=EventType.INVENTORY_CHANGED,
                product_id=booking.product_id,
                location_id=booking.location_id,
                quantity=booking.quantity,
                start_date=as_utc(booking.start_date),
                end_date=as_utc(booking.end_date),
                booking_id=booking.id,
                reason="capacity_reserved" if self.occupies(booking.status) else "capacity_released",
            ))
        self.publisher.publish(self._status_event(booking, previous_status))

    @staticmethod
    def _status_event(booking: Booking, previous_status: Optional[BookingStatus]) -> BookingStatusEvent:
        return BookingStatusEvent(
            event_type=EventType.BOOKING_STATUS_CHANGED,
            product_id=booking.product_id,
            location_id=booking.location_id,
            quantity=booking.quantity,
            start_date=as_utc(booking.start_date),
            end_date=as_utc(booking.end_date),
            booking_id=booking.id,
            booking_number=booking.booking_number,
            user_id=booking.customer_id,
            new_status=booking.status.value,
            previous_status=previous_status.value if previous_status else None,
        )

    # ==================== 逾期 ====================

    def mark_overdue_bookings(self, batch_size: int = 500) -> int:
        """使用中且已过租期结束时间的订单置为 overdue"""
        try:
            now = self.now()
            overdue: List[Booking] = self.db.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.IN_USE,
                    Booking.end_date < now,
                )
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for booking in overdue:
                booking.status = BookingStatus.OVERDUE
                booking.updated_by = "system"
                self._record_change(booking, BookingStatus.IN_USE, now, "system", reason="rental_period_ended")

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"标记逾期订单失败: {str(e)}")
            raise

        for booking in overdue:
            self._after_status_change(booking, BookingStatus.IN_USE)
        if overdue:
            logger.info(f"标记逾期订单 {len(overdue)} 条")
        return len(overdue)
