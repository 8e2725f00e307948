# lotledger/schemas/lot_entry.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from lotledger.models.enums import ConsumeReason, LotState, RestockReason


# ========= 通用基类 =========
class _Base(BaseModel):
    """允许 ORM 输出、忽略多余字段"""

    model_config = ConfigDict(from_attributes=True, extra="ignore")


# 数量 / 价格的合法性由服务层校验（InvalidInputError），这里只做类型约束
class LotConfigIn(_Base):
    allow_partial_sale: bool = True
    expiry_alert_days: Optional[int] = None
    min_stock: int = 0
    requires_authorization: bool = False


# ========= 入库 =========
class LotEntryCreateIn(_Base):
    """入库入参：catalog_item_id 与 product_id 至少给一个"""

    catalog_item_id: Optional[int] = None
    product_id: Optional[int] = None
    quantity: int
    purchase_price: Decimal
    created_by: Annotated[str, Field(max_length=64)]
    created_by_email: Optional[str] = None
    created_by_role: str = "user"
    lot_code: Annotated[str, Field(max_length=64)] = ""
    intake_date: Optional[datetime] = None
    expiry_date: Optional[date] = None
    supplier: Annotated[str, Field(max_length=128)] = ""
    invoice_number: Annotated[str, Field(max_length=64)] = ""
    notes: str = ""
    sale_price: Optional[Decimal] = None
    config: Optional[LotConfigIn] = None


class LotAlertOut(_Base):
    type: str
    message: str
    timestamp: Optional[str] = None
    active: bool = True


class LotEntryOut(_Base):
    id: int
    entry_number: str
    catalog_item_id: int
    product_id: Optional[int] = None
    product_code: str
    product_name: str
    lot_code: str
    supplier: str
    invoice_number: str
    notes: str

    intake_date: datetime
    expiry_date: Optional[date] = None

    initial: int
    available: int
    reserved: int
    sold: int
    returned: int
    lost: int

    purchase_price: Decimal
    sale_price: Optional[Decimal] = None
    total_cost: Decimal
    valuation: Decimal
    usage_percent: int

    state: LotState
    state_reason: str
    rotation_priority: int

    created_by: str
    created_by_email: str
    created_by_role: str
    updated_by: str
    created_at: datetime
    updated_at: datetime

    alerts: list[LotAlertOut] = Field(default_factory=list)
    next_alert_on: Optional[date] = None

    allow_partial_sale: bool
    expiry_alert_days: int
    min_stock: int
    requires_authorization: bool
    version: int


class LotEntryCreateOut(_Base):
    entry: LotEntryOut
    repaired: list[str] = Field(default_factory=list)
    reconciled: bool = False


# ========= 编辑 / 状态 =========
class LotEntryUpdateIn(_Base):
    """只更新显式传入的字段（exclude_unset）"""

    updated_by: str
    purchase_price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    lot_code: Optional[str] = None
    supplier: Optional[str] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = None
    expiry_date: Optional[date] = None
    allow_partial_sale: Optional[bool] = None
    expiry_alert_days: Optional[int] = None
    min_stock: Optional[int] = None
    requires_authorization: Optional[bool] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"updated_by"})


class LotStateIn(_Base):
    state: LotState
    reason: str = ""
    updated_by: str


# ========= 库存动作 =========
class ConsumeIn(_Base):
    quantity: int
    reason: ConsumeReason = ConsumeReason.SALE
    actor: str
    notes: str = ""
    authorized: bool = False


class RestockIn(_Base):
    quantity: int
    reason: RestockReason = RestockReason.RETURN
    actor: str
    notes: str = ""


class ReserveIn(_Base):
    quantity: int
    actor: str


class FifoConsumeIn(_Base):
    quantity: int
    reason: ConsumeReason = ConsumeReason.SALE
    actor: str
    authorized: bool = False


class FifoAllocationOut(_Base):
    lot_entry_id: int
    entry_number: str
    quantity: int
    available_after: int
    state: LotState


class FifoConsumeOut(_Base):
    catalog_item_id: int
    requested: int
    allocations: list[FifoAllocationOut] = Field(default_factory=list)


# ========= 列表 =========
class PaginationOut(_Base):
    page: int
    page_size: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class ListSummaryOut(_Base):
    total_entries: int
    total_available: int
    total_value: Decimal


class LotEntryListOut(_Base):
    entries: list[LotEntryOut] = Field(default_factory=list)
    pagination: PaginationOut
    summary: ListSummaryOut


class LotEntryDeleteOut(_Base):
    deleted: int
    entry_number: str
    product_stock_reversed: bool
    movements_purged: int
