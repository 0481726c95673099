import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
    Index,
)
from app.db.base import Base, BigIntPK

# 1定义库存变更类型（数据库 ENUM）
class ChangeType(str, enum.Enum):
    HOLD = "HOLD"                       # 创建预占
    RELEASE = "RELEASE"                 # 取消预占
    EXPIRE = "EXPIRE"                   # 预占过期
    CONVERT = "CONVERT"                 # 预占转订单
    BOOKING_STATUS = "BOOKING_STATUS"   # 订单状态变更
    RESTOCK = "RESTOCK"                 # 人工补货/调整
# 2️库存日志表（只追加，审计用）
class InventoryLog(Base):
    __tablename__ = "inventory_logs"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
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

    hold_id = Column(
        BigInteger,
        nullable=True,
        index=True,
        comment="关联预占ID",
    )

    booking_id = Column(
        BigInteger,
        nullable=True,
        index=True,
        comment="关联订单ID",
    )

    change_type = Column(
        Enum(
            ChangeType,
            name="inventory_change_type",  # 重要！PostgreSQL ENUM 类型名
        ),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="变更数量",
    )

    available_after = Column(
        Integer,
        nullable=True,
        comment="变更后该区间可用量（批量过期时为空）",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    operator = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：availability_engine / booking_service / sweeper / admin",
    )

# 3️组合索引（高频查询优化）


Index(
    "idx_inventory_logs_key_created_desc",
    InventoryLog.product_id,
    InventoryLog.location_id,
    InventoryLog.created_at.desc(),
)
