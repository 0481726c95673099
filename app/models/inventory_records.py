from sqlalchemy import (
    Column,
    String,
    Integer,
    CheckConstraint,
    UniqueConstraint,
    TIMESTAMP,
    func,
)
from app.db.base import Base, BigIntPK


class InventoryRecord(Base):
    """库存台账：每个 product × location 一行

    只保存总库存，可用量永远在查询时由重叠的 Hold / Booking 推导，
    不存第二份“已预占”计数。
    """

    __tablename__ = "inventory_records"

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

    total_quantity = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="总库存（权威值）",
    )

    # 策略上下限，仅做展示，引擎不校验
    min_quantity = Column(Integer, nullable=True)
    max_quantity = Column(Integer, nullable=True)

    version = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="补货时递增",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "location_id",
            name="uq_inventory_product_location",
        ),
        CheckConstraint(
            "total_quantity >= 0",
            name="ck_total_quantity_non_negative",
        ),
    )
