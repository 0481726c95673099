import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Enum,
    Index,
    ForeignKey,
    CheckConstraint,
    func,
)
from sqlalchemy.orm import relationship
from app.db.base import Base, BigIntPK



# 1️ 订单状态枚举

class BookingStatus(str, enum.Enum):
    PENDING = "pending"        # 待支付
    CONFIRMED = "confirmed"    # 已支付确认
    APPROVED = "approved"      # 人工审核通过
    REJECTED = "rejected"      # 审核拒绝
    PICKED_UP = "picked_up"    # 已取货
    IN_USE = "in_use"          # 使用中
    RETURNED = "returned"      # 已归还
    COMPLETED = "completed"    # 已完成
    CANCELLED = "cancelled"    # 已取消
    OVERDUE = "overdue"        # 逾期未还


# 状态流转表，不在表内的流转一律拒绝
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.REJECTED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.APPROVED,
        BookingStatus.CANCELLED,
        BookingStatus.PICKED_UP,
    }),
    BookingStatus.APPROVED: frozenset({
        BookingStatus.PICKED_UP,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.PICKED_UP: frozenset({
        BookingStatus.IN_USE,
        BookingStatus.RETURNED,
    }),
    BookingStatus.IN_USE: frozenset({
        BookingStatus.RETURNED,
        BookingStatus.OVERDUE,
    }),
    BookingStatus.RETURNED: frozenset({
        BookingStatus.COMPLETED,
    }),
    BookingStatus.OVERDUE: frozenset({
        BookingStatus.RETURNED,
        BookingStatus.COMPLETED,
    }),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}

TERMINAL_BOOKING_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)

# 占用库存的状态（pending 是未支付草稿，不占用）
CAPACITY_BOOKING_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.APPROVED,
    BookingStatus.PICKED_UP,
    BookingStatus.IN_USE,
})


def capacity_statuses(include_overdue: bool = False) -> frozenset:
    if include_overdue:
        return CAPACITY_BOOKING_STATUSES | {BookingStatus.OVERDUE}
    return CAPACITY_BOOKING_STATUSES


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, frozenset())


_status_enum = Enum(
    BookingStatus,
    name="booking_status_type",
    values_callable=lambda e: [m.value for m in e],
)



# 2️ 订单表（硬预留）

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    booking_number = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="订单号 BKyymmddNNNN",
    )

    customer_id = Column(String(64), nullable=False, index=True)
    product_id = Column(String(64), nullable=False)
    location_id = Column(String(64), nullable=False)

    quantity = Column(
        Integer,
        nullable=False,
        comment="租赁数量",
    )

    start_date = Column(TIMESTAMP(timezone=True), nullable=False)
    end_date = Column(TIMESTAMP(timezone=True), nullable=False)

    # 实际取货 / 归还时间（逾期费计算用）
    actual_start_at = Column(TIMESTAMP(timezone=True), nullable=True)
    actual_end_at = Column(TIMESTAMP(timezone=True), nullable=True)

    status = Column(
        _status_enum,
        nullable=False,
        default=BookingStatus.PENDING,
        server_default=BookingStatus.PENDING.value,
    )

    # 来源预占，仅做回溯，不是归属关系
    origin_hold_id = Column(BigInteger, nullable=True)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        order_by="BookingStatusHistory.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_booking_quantity_positive"),
        CheckConstraint("start_date < end_date", name="ck_booking_interval"),
    )


class BookingStatusHistory(Base):
    """订单状态变更审计"""

    __tablename__ = "booking_status_history"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    booking_id = Column(
        BigInteger,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    status = Column(_status_enum, nullable=False)
    previous_status = Column(_status_enum, nullable=True)

    changed_at = Column(TIMESTAMP(timezone=True), nullable=False)
    changed_by = Column(String(64), nullable=True)
    reason = Column(String(255), nullable=True)
    notes = Column(String(1024), nullable=True)

    booking = relationship("Booking", back_populates="history")



# 3️ 可用量查询索引

Index(
    "idx_bookings_key_interval_status",
    Booking.product_id,
    Booking.location_id,
    Booking.start_date,
    Booking.end_date,
    Booking.status,
)

Index(
    "idx_bookings_status_end_date",
    Booking.status,
    Booking.end_date,
)
