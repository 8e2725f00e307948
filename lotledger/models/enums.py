# lotledger/models/enums.py
from __future__ import annotations

try:
    from enum import StrEnum  # Python 3.11+
except ImportError:  # 兼容更低版本
    from enum import Enum

    class StrEnum(str, Enum):  # type: ignore[no-redef]
        pass


class LotState(StrEnum):
    """
    批次（入库单）状态：

    - ACTIVE          可售
    - DEPLETED        可用量归零（唯一由系统自动推导的状态）
    - EXPIRED         过期（人工/批处理显式设置）
    - HELD            冻结（质量问题等）
    - FULLY_RESERVED  全部被预留
    - INACTIVE        手工停用
    """

    ACTIVE = "active"
    DEPLETED = "depleted"
    EXPIRED = "expired"
    HELD = "held"
    FULLY_RESERVED = "fully_reserved"
    INACTIVE = "inactive"


class ConsumeReason(StrEnum):
    SALE = "sale"
    LOSS = "loss"


class RestockReason(StrEnum):
    # 客户退货：returned 桶
    RETURN = "return"
    # 纠偏：冲回 lost 桶
    ADJUSTMENT = "adjustment"


class MovementKind(StrEnum):
    INTAKE = "intake"
    CONSUME = "consume"
    RESTOCK = "restock"
    RESERVE = "reserve"
    RELEASE = "release"
    STATE = "state"
    ADJUST = "adjust"


class AlertType(StrEnum):
    EXPIRY = "expiry"
    LOW_STOCK = "low_stock"
    QUALITY = "quality"
    REVIEW = "review"
