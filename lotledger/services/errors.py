# lotledger/services/errors.py
from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """
    台账领域错误基类：
    - code     稳定的机器可读类别（HTTP 层映射为 Problem.error_code）
    - status   对应的 HTTP 状态码
    - context  小体量上下文（id / 数量），不放堆栈
    """

    code = "ledger_error"
    status = 400

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class NotFoundError(LedgerError):
    code = "not_found"
    status = 404


class InvalidInputError(LedgerError):
    code = "invalid_input"
    status = 422


class InvalidStateError(LedgerError):
    code = "invalid_state"
    status = 409


class InsufficientStockError(LedgerError):
    code = "insufficient_stock"
    status = 409

    def __init__(
        self,
        message: str,
        *,
        available: int,
        requested: int,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.update({"available": int(available), "requested": int(requested)})
        super().__init__(message, context=ctx)
        self.available = int(available)
        self.requested = int(requested)


class CatalogItemInactiveError(LedgerError):
    code = "catalog_item_inactive"
    status = 400


class DataCorruptionError(LedgerError):
    code = "data_corruption"
    status = 500


class ReferenceCorruptionError(LedgerError):
    code = "reference_corruption"
    status = 500


class DuplicateKeyError(LedgerError):
    """
    存储层唯一约束冲突。
    key_value：结构化的冲突键（列名 -> 值），优先于消息解析。
    """

    code = "duplicate_key"
    status = 409

    def __init__(
        self,
        message: str,
        *,
        key_value: Optional[dict[str, Any]] = None,
        constraint: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        ctx = dict(context or {})
        if constraint:
            ctx["constraint"] = constraint
        if key_value:
            ctx["key"] = dict(key_value)
        super().__init__(message, context=ctx)
        self.key_value = dict(key_value or {})
        self.constraint = constraint


class AutoCleanupFailedError(LedgerError):
    """自动清理本身失败：终态，不再重试。"""

    code = "auto_cleanup_failed"
    status = 500

    def __init__(self, original: BaseException, cleanup: BaseException) -> None:
        original_message = str(original) or type(original).__name__
        cleanup_message = str(cleanup) or type(cleanup).__name__
        super().__init__(
            f"duplicate cleanup failed: {cleanup_message} (original error: {original_message})",
            context={
                "original_error": original_message,
                "cleanup_error": cleanup_message,
            },
        )
        self.original = original
        self.cleanup = cleanup


class ConcurrentOperationError(LedgerError):
    code = "concurrent_operation"
    status = 429
