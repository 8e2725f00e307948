# lotledger/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from lotledger.services.errors import (
    DuplicateKeyError,
    InsufficientStockError,
    InvalidStateError,
    LedgerError,
)


class ProblemDetail(TypedDict, total=False):
    type: str  # validation|shortage|state|duplicate
    path: str
    reason: str

    lot_entry_id: int
    requested: int
    available: int

    key: Dict[str, Any]


@dataclass(frozen=True)
class Problem:
    """
    统一错误体：
        {error_code, message, http_status, context?, details?, trace_id?}
    5xx 只暴露首行消息与请求上下文，驱动层原文（SQL / 参数）只进日志。
    """

    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    trace_id: Optional[str] = None

    @classmethod
    def from_ledger_error(
        cls,
        exc: LedgerError,
        *,
        request_ctx: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None,
    ) -> "Problem":
        ctx: Dict[str, Any] = dict(request_ctx or {})
        if exc.status >= 500:
            message = (exc.message.splitlines() or [exc.code])[0]
            return cls(exc.code, message, exc.status, context=ctx or None, trace_id=trace_id)

        ctx.update(exc.context)
        return cls(
            error_code=exc.code,
            message=exc.message,
            http_status=exc.status,
            context=ctx or None,
            details=_details_for(exc) or None,
            trace_id=trace_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def _details_for(exc: LedgerError) -> List[ProblemDetail]:
    if isinstance(exc, InsufficientStockError):
        return [
            {
                "type": "shortage",
                "reason": exc.message,
                "requested": exc.requested,
                "available": exc.available,
            }
        ]
    if isinstance(exc, DuplicateKeyError) and exc.key_value:
        return [{"type": "duplicate", "reason": exc.message, "key": dict(exc.key_value)}]
    if isinstance(exc, InvalidStateError):
        d: ProblemDetail = {"type": "state", "reason": exc.message}
        if "lot_entry_id" in exc.context:
            d["lot_entry_id"] = exc.context["lot_entry_id"]
        return [d]
    return []


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    return Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        trace_id=trace_id,
    ).to_dict()
