from datetime import datetime

import pytest

from app.models.order import OrderStatus
from app.services.analytics_service import (
    compute_order_statistics,
    get_dashboard_metrics,
    get_order_statistics,
    period_key,
    statistics_cache_key,
)
from app.services.cache import ADMIN_METRICS_KEY


@pytest.mark.parametrize(
    "period,expected",
    [("daily", "2026-03-09"), ("weekly", "2026-W02"), ("monthly", "2026-03")],
)
def test_period_key_formats(period, expected):
    assert period_key(datetime(2026, 3, 9, 15, 30), period) == expected


def test_statistics_cache_key_uses_all_for_open_bounds():
    assert statistics_cache_key(None, None, "daily") == "analytics:orders:all:all:daily"
    start = datetime(2026, 3, 1)
    assert statistics_cache_key(start, None, "monthly") == (
        "analytics:orders:2026-03-01T00:00:00:all:monthly"
    )


def test_compute_order_statistics(db_session, make_order, make_customer):
    big_spender = make_customer(name="Big Spender", email="big@example.com")
    make_order(total=5000, customer=big_spender, created_at=datetime(2026, 3, 1, 10))
    make_order(
        total=7000,
        customer=big_spender,
        status=OrderStatus.SHIPPED,
        created_at=datetime(2026, 3, 2, 10),
    )
    make_order(total=3000, created_at=datetime(2026, 3, 2, 11))

    stats = compute_order_statistics(db_session, period="daily")

    assert stats["total_orders"] == 3
    assert stats["total_revenue"] == 15000
    assert stats["average_order_value"] == 5000
    assert stats["revenue_by_period"] == [
        {"date": "2026-03-01", "revenue": 5000, "order_count": 1},
        {"date": "2026-03-02", "revenue": 10000, "order_count": 2},
    ]
    breakdown = {item["status"]: item for item in stats["status_breakdown"]}
    assert breakdown["PENDING"]["count"] == 2
    assert breakdown["SHIPPED"]["percentage"] == pytest.approx(100 / 3)
    assert stats["top_customers"][0]["email"] == "big@example.com"
    assert stats["top_customers"][0]["total_spent"] == 12000
    assert stats["top_customers"][0]["order_count"] == 2


def test_compute_order_statistics_respects_date_range(db_session, make_order):
    make_order(total=1000, created_at=datetime(2026, 1, 15))
    make_order(total=2000, created_at=datetime(2026, 2, 15))

    stats = compute_order_statistics(
        db_session, start_date=datetime(2026, 2, 1), end_date=datetime(2026, 2, 28), period="monthly"
    )

    assert stats["total_orders"] == 1
    assert stats["revenue_by_period"] == [{"date": "2026-02", "revenue": 2000, "order_count": 1}]


def test_empty_statistics(db_session):
    stats = compute_order_statistics(db_session)

    assert stats["total_orders"] == 0
    assert stats["average_order_value"] == 0
    assert stats["status_breakdown"] == []
    assert stats["top_customers"] == []


def test_statistics_are_cached(db_session, make_order, analytics_cache, cache_store):
    make_order(total=1000)

    first = get_order_statistics(db_session, analytics_cache)
    make_order(total=2000)
    second = get_order_statistics(db_session, analytics_cache)

    assert first == second
    assert "analytics:orders:all:all:daily" in cache_store.data


def test_dashboard_metrics_are_cached_under_admin_key(
    db_session, make_order, analytics_cache, cache_store
):
    make_order(total=4000, status=OrderStatus.DELIVERED, refund_amount=1000)
    make_order(total=1000, status=OrderStatus.PENDING)

    metrics = get_dashboard_metrics(db_session, analytics_cache)

    assert metrics["gross_revenue"] == 5000
    assert metrics["refunded_total"] == 1000
    assert metrics["net_revenue"] == 4000
    assert metrics["open_orders"] == 1
    assert metrics["orders_by_status"]["DELIVERED"] == 1
    assert ADMIN_METRICS_KEY in cache_store.data
