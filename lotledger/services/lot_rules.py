# lotledger/services/lot_rules.py
"""
批次数量 / 状态规则（纯函数，不触库）

数量桶关系（每次变更后必须成立）：
    所有桶 >= 0
    available + reserved + sold + lost - returned <= initial
    returned <= sold

状态：
    depleted 是唯一自动推导的状态：消耗到 available == 0 时进入，
    补货（restock）让 depleted 批次重新变回 active。
    预留掉最后一件时 active -> fully_reserved，释放后回到 active。
    其它状态只能通过 apply_state 显式设置。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Union

from lotledger.models.enums import ConsumeReason, LotState, RestockReason
from lotledger.services.errors import (
    InsufficientStockError,
    InvalidInputError,
    InvalidStateError,
)

_ADMIN_TARGETS = frozenset(
    {
        LotState.ACTIVE,
        LotState.EXPIRED,
        LotState.HELD,
        LotState.FULLY_RESERVED,
        LotState.INACTIVE,
    }
)


@dataclass(frozen=True)
class LotBuckets:
    initial: int
    available: int
    reserved: int = 0
    sold: int = 0
    returned: int = 0
    lost: int = 0
    state: str = LotState.ACTIVE.value

    @classmethod
    def of(cls, entry: Any) -> "LotBuckets":
        return cls(
            initial=int(entry.initial or 0),
            available=int(entry.available or 0),
            reserved=int(entry.reserved or 0),
            sold=int(entry.sold or 0),
            returned=int(entry.returned or 0),
            lost=int(entry.lost or 0),
            state=str(entry.state),
        )

    @property
    def outstanding(self) -> int:
        return self.available + self.reserved + self.sold + self.lost - self.returned

    def as_values(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "reserved": self.reserved,
            "sold": self.sold,
            "returned": self.returned,
            "lost": self.lost,
            "state": self.state,
        }


def violations(b: LotBuckets) -> list[str]:
    out: list[str] = []
    for name in ("initial", "available", "reserved", "sold", "returned", "lost"):
        if getattr(b, name) < 0:
            out.append(f"{name} < 0")
    if b.outstanding > b.initial:
        out.append("available + reserved + sold + lost - returned > initial")
    if b.returned > b.sold:
        out.append("returned > sold")
    return out


def check_invariants(b: LotBuckets) -> LotBuckets:
    problems = violations(b)
    if problems:
        raise InvalidStateError(
            "lot quantity invariant violated: " + "; ".join(problems),
            context={"buckets": b.as_values() | {"initial": b.initial}},
        )
    return b


def _positive(quantity: int) -> int:
    try:
        q = int(quantity)
    except (TypeError, ValueError):
        raise InvalidInputError("quantity must be a positive integer", context={"quantity": quantity})
    if q <= 0 or q != quantity:
        raise InvalidInputError("quantity must be a positive integer", context={"quantity": quantity})
    return q


def _reason(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"unknown reason: {value!r}", context={"reason": str(value)})


def assert_consumable(b: LotBuckets) -> None:
    if b.state != LotState.ACTIVE.value or b.available <= 0:
        raise InvalidStateError(
            f"lot is not consumable (state={b.state}, available={b.available})",
            context={"state": b.state, "available": b.available},
        )


def apply_consume(
    b: LotBuckets,
    quantity: int,
    reason: Union[ConsumeReason, str] = ConsumeReason.SALE,
) -> LotBuckets:
    q = _positive(quantity)
    reason = _reason(ConsumeReason, reason)
    assert_consumable(b)
    if q > b.available:
        raise InsufficientStockError(
            f"insufficient stock: available={b.available}, requested={q}",
            available=b.available,
            requested=q,
        )

    nxt = replace(b, available=b.available - q)
    if reason is ConsumeReason.SALE:
        nxt = replace(nxt, sold=b.sold + q)
    else:
        nxt = replace(nxt, lost=b.lost + q)

    if nxt.available == 0:
        nxt = replace(nxt, state=LotState.DEPLETED.value)
    return check_invariants(nxt)


def apply_restock(
    b: LotBuckets,
    quantity: int,
    reason: Union[RestockReason, str] = RestockReason.RETURN,
) -> LotBuckets:
    q = _positive(quantity)
    reason = _reason(RestockReason, reason)

    if reason is RestockReason.RETURN:
        returnable = b.sold - b.returned
        if q > returnable:
            raise InvalidInputError(
                f"cannot return {q} units, only {returnable} sold units are returnable",
                context={"returnable": returnable, "requested": q},
            )
        nxt = replace(b, available=b.available + q, returned=b.returned + q)
    else:
        if q > b.lost:
            raise InvalidInputError(
                f"cannot adjust {q} units, only {b.lost} units are recorded as lost",
                context={"lost": b.lost, "requested": q},
            )
        nxt = replace(b, available=b.available + q, lost=b.lost - q)

    if nxt.state == LotState.DEPLETED.value and nxt.available > 0:
        nxt = replace(nxt, state=LotState.ACTIVE.value)
    return check_invariants(nxt)


def apply_reserve(b: LotBuckets, quantity: int) -> LotBuckets:
    q = _positive(quantity)
    assert_consumable(b)
    if q > b.available:
        raise InsufficientStockError(
            f"insufficient stock to reserve: available={b.available}, requested={q}",
            available=b.available,
            requested=q,
        )
    nxt = replace(b, available=b.available - q, reserved=b.reserved + q)
    if nxt.available == 0:
        nxt = replace(nxt, state=LotState.FULLY_RESERVED.value)
    return check_invariants(nxt)


def apply_release(b: LotBuckets, quantity: int) -> LotBuckets:
    q = _positive(quantity)
    if q > b.reserved:
        raise InvalidInputError(
            f"cannot release {q} units, only {b.reserved} reserved",
            context={"reserved": b.reserved, "requested": q},
        )
    nxt = replace(b, available=b.available + q, reserved=b.reserved - q)
    if nxt.state == LotState.FULLY_RESERVED.value:
        nxt = replace(nxt, state=LotState.ACTIVE.value)
    return check_invariants(nxt)


def apply_state(b: LotBuckets, target: Union[LotState, str]) -> LotBuckets:
    """管理员显式状态切换；depleted 不可手工设置。"""
    try:
        target = LotState(target)
    except ValueError:
        raise InvalidInputError(f"unknown lot state: {target!r}", context={"state": str(target)})

    if target not in _ADMIN_TARGETS:
        raise InvalidInputError(
            f"state {target.value} is derived and cannot be set explicitly",
            context={"state": target.value},
        )
    if target is LotState.ACTIVE and b.available <= 0:
        raise InvalidStateError(
            "cannot activate a lot without available stock",
            context={"state": b.state, "available": b.available},
        )
    return check_invariants(replace(b, state=target.value))
