# lotledger/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

try:
    # multiprocess 支持（需在进程启动前设置好 PROMETHEUS_MULTIPROC_DIR）
    from prometheus_client import REGISTRY, CollectorRegistry, multiprocess

    _HAVE_MP = True
except Exception:  # 兼容无 multiprocess 环境
    from prometheus_client import REGISTRY

    _HAVE_MP = False

# 台账指标
LOTS_CREATED = Counter("lot_entries_created_total", "Lot entries created")
UNITS_CONSUMED = Counter("lot_units_consumed_total", "Units consumed from lots", ["reason"])
UNITS_RESTOCKED = Counter("lot_units_restocked_total", "Units restocked into lots", ["reason"])
VERSION_CONFLICTS = Counter("lot_version_conflicts_total", "Optimistic lock conflicts on lots")
SIDE_EFFECT_FAILURES = Counter(
    "lot_side_effect_failures_total", "Best-effort side effects that failed", ["kind"]
)

# 保护 / 修复 / 清理
GUARD_REJECTIONS = Counter("ledger_guard_rejections_total", "Concurrent operations rejected")
INTEGRITY_REPAIRS = Counter("ledger_integrity_repairs_total", "Catalog link repairs", ["kind"])
CLEANUP_RUNS = Counter("ledger_cleanup_runs_total", "Duplicate cleanup runs", ["mode", "outcome"])
CLEANUP_ELIMINATED = Counter(
    "ledger_cleanup_eliminated_total", "Duplicate rows eliminated", ["spec"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    多进程模式下由 MultiProcessCollector 合并各分片。
    """
    if _HAVE_MP and os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
