# lotledger/services/lot_alerts.py
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional

from lotledger.db.types import utcnow
from lotledger.models.enums import AlertType, LotState

# 由系统推导的预警类型；其余（quality / review）由人工挂上，刷新时保留
DERIVED_ALERTS = frozenset({AlertType.EXPIRY.value, AlertType.LOW_STOCK.value})

_SILENT_STATES = frozenset({LotState.INACTIVE.value, LotState.DEPLETED.value})


def make_alert(type_: str, message: str, *, at: Optional[datetime] = None) -> dict[str, Any]:
    return {
        "type": str(type_),
        "message": message,
        "timestamp": (at or utcnow()).isoformat(),
        "active": True,
    }


def next_alert_on(expiry_date: Optional[date], alert_days: int) -> Optional[date]:
    if expiry_date is None:
        return None
    return expiry_date - timedelta(days=int(alert_days or 0))


def compute_alerts(
    *,
    state: str,
    available: int,
    min_stock: int,
    expiry_date: Optional[date],
    expiry_alert_days: int,
    existing: Optional[list[dict[str, Any]]] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """
    重新推导 expiry / low_stock 两类预警：
    - 已存在且仍成立的预警保留原 timestamp
    - 人工预警原样保留
    """
    now = now or utcnow()
    today = today or now.date()
    prior = {a.get("type"): a for a in (existing or []) if a.get("active", True)}
    manual = [a for a in (existing or []) if a.get("type") not in DERIVED_ALERTS]

    derived: list[dict[str, Any]] = []
    if state not in _SILENT_STATES:
        if expiry_date is not None:
            days_left = (expiry_date - today).days
            if days_left <= int(expiry_alert_days or 0):
                msg = (
                    f"expired {-days_left} day(s) ago"
                    if days_left < 0
                    else f"expires in {days_left} day(s)"
                )
                derived.append(_keep_or_make(prior, AlertType.EXPIRY.value, msg, now))

        if int(min_stock or 0) > 0 and int(available) <= int(min_stock):
            derived.append(
                _keep_or_make(
                    prior,
                    AlertType.LOW_STOCK.value,
                    f"available {available} at or below minimum {min_stock}",
                    now,
                )
            )

    return manual + derived


def _keep_or_make(
    prior: dict[str, dict[str, Any]], type_: str, message: str, now: datetime
) -> dict[str, Any]:
    old = prior.get(type_)
    alert = make_alert(type_, message, at=now)
    if old is not None and old.get("timestamp"):
        alert["timestamp"] = old["timestamp"]
    return alert


def alerts_for_entry(entry: Any, *, overrides: Optional[dict[str, Any]] = None, now=None):
    """按 entry 当前字段（可用 overrides 预览变更后的值）计算预警。"""
    values = dict(overrides or {})

    def pick(name: str):
        return values[name] if name in values else getattr(entry, name)

    return compute_alerts(
        state=pick("state"),
        available=pick("available"),
        min_stock=pick("min_stock"),
        expiry_date=pick("expiry_date"),
        expiry_alert_days=pick("expiry_alert_days"),
        existing=pick("alerts"),
        now=now,
    )


def active_alerts(alerts: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    return [a for a in (alerts or []) if a.get("active", True)]
