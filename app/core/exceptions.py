"""领域异常定义

服务层只抛这些异常，由 main.py 中的全局处理器统一转成 JSON 响应。
每个异常带 code / status_code 和结构化的 details，调用方可据此处理
（例如库存冲突时展示真实剩余数量）。
"""

from typing import Any, Dict


class InventoryError(Exception):
    """库存服务异常基类"""

    code = "inventory_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


class ValidationError(InventoryError):
    """输入不合法（日期、数量等），调用方修正后重试"""

    code = "validation_error"
    status_code = 400


class PermissionDeniedError(InventoryError):
    code = "permission_denied"
    status_code = 403


class NotFoundError(InventoryError):
    code = "not_found"
    status_code = 404


class CapacityConflictError(InventoryError):
    """请求数量超过当前可用量，不自动重试"""

    code = "capacity_conflict"
    status_code = 409

    def __init__(self, message: str, available: int, **details: Any):
        super().__init__(message, available=available, **details)
        self.available = available


class DuplicateHoldError(InventoryError):
    code = "duplicate_hold"
    status_code = 409


class StateTransitionError(InventoryError):
    code = "invalid_state_transition"
    status_code = 409


class BoundsError(InventoryError):
    code = "bounds_exceeded"
    status_code = 422


class ContentionError(InventoryError):
    """拿不到按 product+location 的锁，多次退避后放弃"""

    code = "contention"
    status_code = 429
