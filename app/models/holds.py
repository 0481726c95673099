import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    Enum,
    Index,
    CheckConstraint,
    func,
)
from app.db.base import Base, BigIntPK



# 1️ 预占状态枚举，expired / converted / cancelled 均为终态

class HoldStatus(str, enum.Enum):
    ACTIVE = "active"         # 预占中
    EXPIRED = "expired"       # 已过期
    CONVERTED = "converted"   # 已转为订单
    CANCELLED = "cancelled"   # 已取消


class HoldSource(str, enum.Enum):
    WEB = "web"
    MOBILE = "mobile"
    API = "api"



# 2️ 预占表（软预留，带 TTL）

class Hold(Base):
    __tablename__ = "holds"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    user_id = Column(
        String(64),
        nullable=False,
        comment="用户ID",
    )

    product_id = Column(
        String(64),
        nullable=False,
        comment="商品ID",
    )

    location_id = Column(
        String(64),
        nullable=False,
        comment="门店/仓库ID",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    # 租期，左闭右开 [start_date, end_date)
    start_date = Column(TIMESTAMP(timezone=True), nullable=False)
    end_date = Column(TIMESTAMP(timezone=True), nullable=False)

    status = Column(
        Enum(
            HoldStatus,
            name="hold_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=HoldStatus.ACTIVE,
        server_default=HoldStatus.ACTIVE.value,
        comment="预占状态",
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="预占过期时间",
    )

    # 转订单
    converted_to_booking_id = Column(BigInteger, nullable=True)
    converted_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # 取消
    cancelled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    expired_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="清理任务置为过期的时间",
    )

    # 会话信息
    session_id = Column(String(128), nullable=True)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    source = Column(
        Enum(
            HoldSource,
            name="hold_source_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=HoldSource.WEB,
        server_default=HoldSource.WEB.value,
    )
    cart_id = Column(String(64), nullable=True)
    referrer = Column(String(512), nullable=True)

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

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_hold_quantity_positive"),
        CheckConstraint("start_date < end_date", name="ck_hold_interval"),
    )



# 3️ 高频查询优化索引

Index(
    "idx_holds_key_interval_status",
    Hold.product_id,
    Hold.location_id,
    Hold.start_date,
    Hold.end_date,
    Hold.status,
)

Index(
    "idx_holds_status_expires_at",
    Hold.status,
    Hold.expires_at,
)

Index(
    "idx_holds_user_created",
    Hold.user_id,
    Hold.created_at.desc(),
)
