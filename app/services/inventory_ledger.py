"""库存台账读写"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import ValidationError
from app.models.inventory_records import InventoryRecord
from app.models.inventory_logs import InventoryLog, ChangeType

logger = logging.getLogger(__name__)


class InventoryLedger:
    """台账只存总量；引擎只读，补货/上架由管理端调用"""

    def __init__(self, db: Session):
        self.db = db

    def get_record(self, product_id: str, location_id: str, for_update: bool = False) -> Optional[InventoryRecord]:
        stmt = select(InventoryRecord).where(
            InventoryRecord.product_id == product_id,
            InventoryRecord.location_id == location_id,
        )
        if for_update:
            # 行级锁，串行化同一 key 上的“读可用量 -> 写预留”
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def set_total_quantity(
        self,
        product_id: str,
        location_id: str,
        total_quantity: int,
        min_quantity: Optional[int] = None,
        max_quantity: Optional[int] = None,
        operator: Optional[str] = None,
    ) -> InventoryRecord:
        """上架（不存在则创建）或补货，调用方负责 commit"""
        if total_quantity < 0:
            raise ValidationError("总库存不能为负数", total_quantity=total_quantity)

        record = self.get_record(product_id, location_id, for_update=True)
        if record is None:
            record = InventoryRecord(
                product_id=product_id,
                location_id=location_id,
                total_quantity=total_quantity,
                version=0,
            )
            self.db.add(record)
            delta = total_quantity
            logger.info(f"上架库存: product_id={product_id}, location_id={location_id}, total={total_quantity}")
        else:
            delta = total_quantity - record.total_quantity
            record.total_quantity = total_quantity
            record.version = (record.version or 0) + 1
            logger.info(
                f"调整库存: product_id={product_id}, location_id={location_id}, "
                f"total={total_quantity}, delta={delta}"
            )

        if min_quantity is not None:
            record.min_quantity = min_quantity
        if max_quantity is not None:
            record.max_quantity = max_quantity

        self.db.add(InventoryLog(
            product_id=product_id,
            location_id=location_id,
            change_type=ChangeType.RESTOCK,
            quantity=delta,
            operator=operator,
            source="admin",
        ))
        self.db.flush()
        return record
