from datetime import date, datetime, timedelta, timezone

from lotledger.services.lot_alerts import active_alerts, compute_alerts, next_alert_on

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _alerts(**kw):
    base = dict(
        state="active",
        available=10,
        min_stock=0,
        expiry_date=None,
        expiry_alert_days=7,
        today=TODAY,
        now=NOW,
    )
    base.update(kw)
    return compute_alerts(**base)


def _types(alerts):
    return sorted(a["type"] for a in alerts)


def test_no_alerts_for_healthy_lot():
    assert _alerts(expiry_date=TODAY + timedelta(days=30)) == []


def test_expiry_alert_inside_window():
    out = _alerts(expiry_date=TODAY + timedelta(days=3))
    assert _types(out) == ["expiry"]
    assert out[0]["message"] == "expires in 3 day(s)"
    assert out[0]["active"] is True


def test_expiry_alert_for_already_expired_lot():
    out = _alerts(expiry_date=TODAY - timedelta(days=2))
    assert out[0]["message"] == "expired 2 day(s) ago"


def test_low_stock_only_when_minimum_configured():
    assert _types(_alerts(available=5, min_stock=5)) == ["low_stock"]
    assert _alerts(available=0, min_stock=0) == []


def test_silent_states_drop_derived_but_keep_manual():
    manual = {"type": "quality", "message": "smell check", "timestamp": "x", "active": True}
    out = _alerts(
        state="depleted",
        available=0,
        min_stock=3,
        expiry_date=TODAY,
        existing=[manual],
    )
    assert out == [manual]


def test_existing_alert_keeps_original_timestamp():
    old = {
        "type": "expiry",
        "message": "expires in 5 day(s)",
        "timestamp": "2024-05-30T00:00:00+00:00",
        "active": True,
    }
    out = _alerts(expiry_date=TODAY + timedelta(days=3), existing=[old])
    assert out[0]["timestamp"] == "2024-05-30T00:00:00+00:00"
    assert out[0]["message"] == "expires in 3 day(s)"


def test_next_alert_on():
    assert next_alert_on(date(2024, 6, 10), 7) == date(2024, 6, 3)
    assert next_alert_on(None, 7) is None


def test_active_alerts_filters_inactive():
    alerts = [{"type": "review", "active": False}, {"type": "quality"}]
    assert active_alerts(alerts) == [{"type": "quality"}]
    assert active_alerts(None) == []
