"""库存台账与过期预占清理 API 路由（展示三种清理调用方式）"""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query

from app.core.dependencies import Caller, get_availability_service, get_caller
from app.core.exceptions import InventoryError, NotFoundError
from app.schemas.availability_api import (
    CeleryTaskResponse,
    InventoryRecordDetail,
    InventoryRecordResponse,
    RestockRequest,
    SweepResponse,
    TaskStatusResponse,
)
from app.services.availability_service import AvailabilityService
from tasks.hold_tasks import expire_holds as celery_expire_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        400: {"description": "请求参数错误"},
        403: {"description": "仅限员工操作"},
        404: {"description": "资源未找到"},
        429: {"description": "库存操作冲突，请稍后重试"},
        500: {"description": "服务器内部错误"}
    }
)


def require_staff(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_staff:
        raise HTTPException(status_code=403, detail="仅限员工操作")
    return caller


@router.get(
    "/{product_id}/{location_id}",
    response_model=InventoryRecordResponse,
    summary="查询库存台账",
)
def get_inventory_record(
    product_id: str = Path(..., min_length=1, max_length=64),
    location_id: str = Path(..., min_length=1, max_length=64),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        record = service.ledger.get_record(product_id, location_id)
        if record is None:
            raise NotFoundError("该门店没有此商品库存", product_id=product_id, location_id=location_id)
        return {"success": True, "data": InventoryRecordDetail.model_validate(record)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"查询库存台账失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put(
    "/{product_id}/{location_id}",
    response_model=InventoryRecordResponse,
    summary="上架 / 补货",
    description="""设置商品在门店的总库存，不存在时创建。

    **注意：** 只改总量，不影响已有预占和订单；可用量随之重新计算。
    """,
)
def restock(
    product_id: str = Path(..., min_length=1, max_length=64),
    location_id: str = Path(..., min_length=1, max_length=64),
    payload: RestockRequest = Body(...),
    caller: Caller = Depends(require_staff),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        record = service.restock(
            product_id,
            location_id,
            payload.total_quantity,
            min_quantity=payload.min_quantity,
            max_quantity=payload.max_quantity,
            operator=caller.user_id,
        )
        return {"success": True, "message": "库存已更新", "data": InventoryRecordDetail.model_validate(record)}
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"更新库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== 过期预占清理 ====================

@router.post(
    "/holds/sweep/manual",
    response_model=SweepResponse,
    summary="手动清理过期预占（同步执行）",
)
def manual_sweep(
    batch_size: int = Query(500, ge=1, le=5000, description="批处理大小"),
    caller: Caller = Depends(require_staff),
    service: AvailabilityService = Depends(get_availability_service),
):
    try:
        count = service.expire_holds(batch_size)
        return {
            "success": True,
            "message": f"清理完成，共置为过期 {count} 条预占",
            "expired_count": count,
        }
    except (HTTPException, InventoryError):
        raise
    except Exception as e:
        logger.error(f"手动清理失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/holds/sweep/celery",
    response_model=CeleryTaskResponse,
    summary="提交 Celery 清理任务（异步执行）",
)
def celery_sweep(
    batch_size: int = Query(500, ge=1, le=5000, description="批处理大小"),
    caller: Caller = Depends(require_staff),
):
    try:
        task = celery_expire_task.delay(batch_size)
        logger.info(f"已提交过期预占清理任务: {task.id}")
        return {
            "success": True,
            "message": "清理任务已提交",
            "task_id": task.id
        }
    except Exception as e:
        logger.error(f"提交清理任务失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/holds/sweep/status/{task_id}",
    response_model=TaskStatusResponse,
    summary="查询 Celery 清理任务状态",
)
def get_sweep_status(task_id: str):
    try:
        from celery_app import app
        task = app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "任务等待中"
        elif task.state == 'SUCCESS':
            status = f"任务完成: {task.result}"
        elif task.state == 'FAILURE':
            status = f"任务失败: {str(task.info)}"
        else:
            status = f"任务状态: {task.state}"

        return {
            "task_id": task_id,
            "status": status,
            "state": task.state
        }
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
