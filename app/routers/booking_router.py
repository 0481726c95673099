"""订单 API 路由（创建 / 查询 / 状态流转）"""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Path

from app.core.dependencies import Caller, get_booking_service, get_caller
from app.core.exceptions import InventoryError
from app.schemas.availability_api import (
    BookingDetail,
    BookingResponse,
    ChangeBookingStatusRequest,
    CreateBookingRequest,
)
from app.services.booking_service import BookingService

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/bookings",
    tags=["订单"],
    responses={
        400: {"description": "请求参数错误"},
        404: {"description": "订单或预占不存在"},
        409: {"description": "库存冲突 / 状态流转不允许"},
        429: {"description": "库存操作冲突，请稍后重试"},
        500: {"description": "服务器内部错误"}
    }
)


@router.post(
    "",
    response_model=BookingResponse,
    status_code=201,
    summary="创建订单",
    description="""传 hold_id 时把预占转为订单（结账流程），否则直接下单。

    转换、订单写入和最终库存复核在同一个事务内完成；
    复核失败时预占保持有效，直到自然过期或重试。
    """,
)
def create_booking(
    payload: CreateBookingRequest = Body(...),
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        if payload.hold_id is not None:
            booking = service.create_booking_from_hold(payload.hold_id, caller.user_id, payload.status)
        else:
            booking = service.create_booking(
                caller.user_id,
                payload.product_id,
                payload.location_id,
                payload.quantity,
                payload.start_date,
                payload.end_date,
                status=payload.status,
                created_by=caller.user_id,
            )
        return {"success": True, "message": "下单成功", "data": BookingDetail.model_validate(booking)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"创建订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="订单详情",
)
def get_booking(
    booking_id: int = Path(..., gt=0),
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id)
        if booking.customer_id != caller.user_id and not caller.is_staff:
            raise HTTPException(status_code=403, detail="只能查看自己的订单")
        return {"success": True, "data": BookingDetail.model_validate(booking)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="变更订单状态",
    description="""按固定流转表变更状态，不在表内的流转返回 409。

    pending -> confirmed 等进入占库存状态的流转会重新校验库存。
    """,
)
def change_booking_status(
    booking_id: int = Path(..., gt=0),
    payload: ChangeBookingStatusRequest = Body(...),
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.change_status(
            booking_id,
            payload.status,
            changed_by=caller.user_id,
            reason=payload.reason,
            notes=payload.notes,
        )
        return {"success": True, "message": "状态已更新", "data": BookingDetail.model_validate(booking)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"变更订单状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
