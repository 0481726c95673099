"""可用量 / 预占 / 订单 API 专用的 Pydantic 模型和响应格式"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models.bookings import BookingStatus
from app.models.holds import HoldSource, HoldStatus
from app.services.overlap import as_utc


# ==================== 请求模型 ====================

class DateRangeMixin(BaseModel):
    start_date: datetime = Field(
        ...,
        description="租期开始（含）",
        examples=["2024-06-01T00:00:00Z"],
    )
    end_date: datetime = Field(
        ...,
        description="租期结束（不含）",
        examples=["2024-06-05T00:00:00Z"],
    )

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_utc(cls, value: datetime) -> datetime:
        # 不带时区的按 UTC 处理
        return as_utc(value)

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date >= self.end_date:
            raise ValueError("结束时间必须晚于开始时间")
        return self


class CreateHoldRequest(DateRangeMixin):
    """创建预占请求"""
    product_id: str = Field(..., min_length=1, max_length=64, description="商品ID")
    location_id: str = Field(..., min_length=1, max_length=64, description="门店ID")
    quantity: int = Field(..., ge=1, description="预占数量", examples=[2])
    session_id: Optional[str] = Field(None, max_length=128)
    source: Optional[HoldSource] = None
    cart_id: Optional[str] = Field(None, max_length=64)
    referrer: Optional[str] = Field(None, max_length=512)


class ExtendHoldRequest(BaseModel):
    """延长预占请求"""
    minutes: int = Field(
        10,
        ge=1,
        le=30,
        description="延长分钟数",
    )


class CancelHoldRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class CreateBookingRequest(BaseModel):
    """创建订单请求：传 hold_id 走预占转订单，否则直接下单"""
    hold_id: Optional[int] = Field(None, gt=0, description="预占ID")
    product_id: Optional[str] = Field(None, min_length=1, max_length=64)
    location_id: Optional[str] = Field(None, min_length=1, max_length=64)
    quantity: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: BookingStatus = Field(
        BookingStatus.PENDING,
        description="初始状态，已完成支付时可直接传 confirmed",
    )

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def check_direct_fields(self):
        if self.hold_id is None:
            missing = [
                name for name in ("product_id", "location_id", "quantity", "start_date", "end_date")
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"直接下单缺少字段: {', '.join(missing)}")
        return self


class ChangeBookingStatusRequest(BaseModel):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=1024)


class RestockRequest(BaseModel):
    """上架 / 补货请求"""
    total_quantity: int = Field(..., ge=0, description="总库存")
    min_quantity: Optional[int] = Field(None, ge=0)
    max_quantity: Optional[int] = Field(None, ge=0)


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class AvailabilityData(BaseModel):
    available: bool
    available_quantity: int = Field(..., ge=0)
    total_stock: int
    booked_quantity: int
    held_quantity: int
    overlapping_bookings: int
    active_holds: int
    reason: Optional[str] = None


class AvailabilityResponse(BaseResponse):
    data: AvailabilityData


class HoldDetail(BaseModel):
    """预占详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    product_id: str
    location_id: str
    quantity: int
    start_date: datetime
    end_date: datetime
    status: HoldStatus
    expires_at: datetime
    remaining_minutes: int = 0
    created_at: Optional[datetime] = None
    converted_to_booking_id: Optional[int] = None


class HoldResponse(BaseResponse):
    data: HoldDetail


class HoldListResponse(BaseResponse):
    data: List[HoldDetail]


class HoldStatisticsResponse(BaseResponse):
    data: Dict[str, float]


class BookingDetail(BaseModel):
    """订单详情"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_number: str
    customer_id: str
    product_id: str
    location_id: str
    quantity: int
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    origin_hold_id: Optional[int] = None
    actual_start_at: Optional[datetime] = None
    actual_end_at: Optional[datetime] = None


class BookingResponse(BaseResponse):
    data: BookingDetail


class InventoryRecordDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    location_id: str
    total_quantity: int
    min_quantity: Optional[int] = None
    max_quantity: Optional[int] = None
    version: int


class InventoryRecordResponse(BaseResponse):
    data: InventoryRecordDetail


class SweepResponse(BaseResponse):
    """清理任务响应"""
    expired_count: Optional[int] = Field(
        None,
        ge=0,
        description="本次置为过期的预占数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = "healthy"
    service: str = "rental-availability-service"
    version: str = "1.0.0"
