"""可用量与预占 API 路由"""

from datetime import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request

from app.core.dependencies import Caller, get_availability_service, get_caller
from app.core.exceptions import InventoryError
from app.models.holds import Hold, HoldStatus
from app.schemas.availability_api import (
    AvailabilityData,
    AvailabilityResponse,
    CancelHoldRequest,
    CreateHoldRequest,
    ExtendHoldRequest,
    HoldDetail,
    HoldListResponse,
    HoldResponse,
    HoldStatisticsResponse,
)
from app.services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/availability",
    tags=["可用量与预占"],
    responses={
        400: {"description": "请求参数错误"},
        403: {"description": "无权操作"},
        404: {"description": "资源未找到"},
        409: {"description": "库存冲突 / 重复预占 / 状态不允许"},
        422: {"description": "请求验证失败 / 超出时长上限"},
        429: {"description": "库存操作冲突，请稍后重试"},
        500: {"description": "服务器内部错误"}
    }
)


def hold_detail(service: AvailabilityService, hold: Hold) -> HoldDetail:
    detail = HoldDetail.model_validate(hold)
    detail.remaining_minutes = service.remaining_minutes(hold)
    return detail


@router.get(
    "",
    response_model=AvailabilityResponse,
    summary="查询区间可用量",
    description="""查询商品在某门店某租期内的可用数量。

    **计算方式：** 总库存 - 重叠的占用中订单 - 重叠的有效预占

    结果只是查询时刻的快照，真正下预占时会重新校验。
    """,
)
def get_availability(
    product_id: str = Query(..., min_length=1, description="商品ID"),
    location_id: str = Query(..., min_length=1, description="门店ID"),
    start_date: datetime = Query(..., description="租期开始（含）"),
    end_date: datetime = Query(..., description="租期结束（不含）"),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        result = service.compute_availability(
            product_id, location_id, start_date, end_date, use_cache=True
        )
        return {
            "success": True,
            "data": AvailabilityData(
                available=result.available,
                available_quantity=result.available_quantity,
                total_stock=result.total_stock,
                booked_quantity=result.booked_quantity,
                held_quantity=result.held_quantity,
                overlapping_bookings=result.overlapping_bookings,
                active_holds=result.active_holds,
                reason=result.reason,
            ),
        }
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询可用量失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/holds",
    response_model=HoldResponse,
    status_code=201,
    summary="创建预占",
    description="""在指定租期内临时锁定库存，防止超卖。

    **特点：**
    - product+location 粒度的分布式锁 + 数据库行级锁
    - 默认 10 分钟后自动过期，可延长，总时长不超过 30 分钟
    - 同一用户在重叠租期内只能有一个有效预占
    """,
)
def create_hold(
    request: Request,
    payload: CreateHoldRequest = Body(...),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        session_meta = {
            "session_id": payload.session_id,
            "user_agent": request.headers.get("user-agent"),
            "ip_address": request.client.host if request.client else None,
            "source": payload.source.value if payload.source else None,
            "cart_id": payload.cart_id,
            "referrer": payload.referrer,
        }
        hold = service.create_hold(
            caller.user_id,
            payload.product_id,
            payload.location_id,
            payload.quantity,
            payload.start_date,
            payload.end_date,
            session_meta,
        )
        return {"success": True, "message": "预占成功", "data": hold_detail(service, hold)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"创建预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/holds",
    response_model=HoldListResponse,
    summary="我的预占列表",
)
def list_holds(
    status: Optional[HoldStatus] = Query(HoldStatus.ACTIVE, description="按状态过滤"),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        holds = service.list_user_holds(caller.user_id, status)
        return {"success": True, "data": [hold_detail(service, hold) for hold in holds]}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询预占列表失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/holds/stats",
    response_model=HoldStatisticsResponse,
    summary="预占统计（含转化率）",
)
def hold_statistics(
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    if not caller.is_staff:
        raise HTTPException(status_code=403, detail="仅限员工查看")
    try:
        return {"success": True, "data": service.hold_statistics(since, until)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询预占统计失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/holds/{hold_id}",
    response_model=HoldResponse,
    summary="预占详情",
)
def get_hold(
    hold_id: int = Path(..., gt=0),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        hold = service.get_hold(hold_id)
        if hold.user_id != caller.user_id and not caller.is_staff:
            raise HTTPException(status_code=403, detail="只能查看自己的预占")
        return {"success": True, "data": hold_detail(service, hold)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put(
    "/holds/{hold_id}/extend",
    response_model=HoldResponse,
    summary="延长预占",
)
def extend_hold(
    hold_id: int = Path(..., gt=0),
    payload: Optional[ExtendHoldRequest] = Body(None),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        minutes = payload.minutes if payload else ExtendHoldRequest().minutes
        hold = service.extend_hold(hold_id, caller.user_id, minutes)
        return {"success": True, "message": "延长成功", "data": hold_detail(service, hold)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"延长预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete(
    "/holds/{hold_id}",
    response_model=HoldResponse,
    summary="取消预占",
)
def cancel_hold(
    hold_id: int = Path(..., gt=0),
    payload: Optional[CancelHoldRequest] = Body(None),
    caller: Caller = Depends(get_caller),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        reason = payload.reason if payload and payload.reason else "Cancelled by user"
        hold = service.cancel_hold(hold_id, caller.user_id, reason, is_staff=caller.is_staff)
        return {"success": True, "message": "取消成功", "data": hold_detail(service, hold)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"取消预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
