# lotledger/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lotledger.api.problem import Problem, ProblemDetail, make_problem
from lotledger.services.errors import ConcurrentOperationError, LedgerError

logger = logging.getLogger("lotledger")


def _trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def _where(req: Request) -> Dict[str, Any]:
    return {"method": req.method, "path": req.url.path}


def _validation_details(exc: RequestValidationError) -> List[ProblemDetail]:
    out: List[ProblemDetail] = []
    for i, e in enumerate(exc.errors()):
        loc = ".".join(str(p) for p in e.get("loc", ()) if p not in ("body", "query", "path"))
        out.append(
            {
                "type": "validation",
                "path": loc or f"validation[{i}]",
                "reason": str(e.get("msg") or e.get("type") or "invalid"),
            }
        )
    return out


def register_exception_handlers(app: FastAPI) -> None:
    """台账错误 / 参数校验 / HTTPException / 未捕获异常，统一输出 Problem 形状。"""

    @app.exception_handler(LedgerError)
    async def _ledger_exc(req: Request, exc: LedgerError):
        trace_id = _trace_id()
        if exc.status >= 500:
            logger.error("ledger error [%s] %s: %s %s", trace_id, exc.code, exc.message, exc.context)
        elif isinstance(exc, ConcurrentOperationError):
            logger.info("rejected [%s] %s %s: %s", trace_id, req.method, req.url.path, exc.message)
        problem = Problem.from_ledger_error(exc, request_ctx=_where(req), trace_id=trace_id)
        return JSONResponse(status_code=exc.status, content=jsonable_encoder(problem.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        content = make_problem(
            status_code=422,
            error_code="request_validation_error",
            message="request parameters are invalid",
            context=_where(req),
            details=_validation_details(exc),
            trace_id=_trace_id(),
        )
        return JSONResponse(status_code=422, content=jsonable_encoder(content))

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        detail = exc.detail if exc.detail is not None else "request rejected"
        content = make_problem(
            status_code=exc.status_code,
            error_code="http_error",
            message=str(detail),
            context=_where(req),
            trace_id=_trace_id(),
        )
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _trace_id()
        logger.exception("unhandled error [%s] %s %s", trace_id, req.method, req.url.path)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="internal error, please retry later",
            context=_where(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)
