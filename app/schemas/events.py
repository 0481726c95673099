"""实时事件模型（推送给订阅方的提示，不是权威状态）"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.services.overlap import utcnow


class EventType(str, Enum):
    HOLD_CREATED = "hold.created"
    HOLD_RELEASED = "hold.released"
    BOOKING_STATUS_CHANGED = "booking.statusChanged"
    INVENTORY_CHANGED = "inventory.changed"


class InventoryEvent(BaseModel):
    """所有事件的公共字段"""
    event_type: EventType
    product_id: str
    location_id: str
    quantity: int
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utcnow)


class HoldEvent(InventoryEvent):
    hold_id: int
    user_id: str
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(
        None,
        description="released 事件的原因：cancelled / expired",
    )


class BookingStatusEvent(InventoryEvent):
    booking_id: int
    booking_number: str
    user_id: str
    new_status: str
    previous_status: Optional[str] = None


class InventoryChangedEvent(InventoryEvent):
    booking_id: Optional[int] = None
    reason: Optional[str] = None
