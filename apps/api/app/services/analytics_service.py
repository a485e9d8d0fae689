from datetime import datetime
from typing import Any, Literal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.models.customer import Customer
from app.models.order import Order, OrderStatus
from app.services.cache import ADMIN_METRICS_KEY, AnalyticsCache
from app.services.orders_service import OrderFilters, build_filter_clauses

Period = Literal["daily", "weekly", "monthly"]

TOP_CUSTOMER_LIMIT = 10


def statistics_cache_key(
    start_date: datetime | None, end_date: datetime | None, period: Period
) -> str:
    start = start_date.isoformat() if start_date else "all"
    end = end_date.isoformat() if end_date else "all"
    return f"analytics:orders:{start}:{end}:{period}"


def period_key(value: datetime, period: Period) -> str:
    if period == "daily":
        return value.strftime("%Y-%m-%d")
    if period == "weekly":
        week = (value.day + 6) // 7
        return f"{value.year}-W{week:02d}"
    return value.strftime("%Y-%m")


def _date_condition(start_date: datetime | None, end_date: datetime | None):
    clauses = build_filter_clauses(OrderFilters(start_date=start_date, end_date=end_date))
    return and_(*clauses) if clauses else None


def _revenue_by_period(
    db: Session, condition, period: Period
) -> list[dict[str, Any]]:
    query = select(Order.created_at, Order.total).order_by(Order.created_at.asc())
    if condition is not None:
        query = query.where(condition)

    grouped: dict[str, dict[str, int]] = {}
    for created_at, total in db.execute(query).yield_per(500):
        bucket = grouped.setdefault(period_key(created_at, period), {"revenue": 0, "count": 0})
        bucket["revenue"] += total
        bucket["count"] += 1

    return [
        {"date": key, "revenue": values["revenue"], "order_count": values["count"]}
        for key, values in sorted(grouped.items())
    ]


def compute_order_statistics(
    db: Session,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    period: Period = "daily",
) -> dict[str, Any]:
    condition = _date_condition(start_date, end_date)

    def scoped(query):
        return query.where(condition) if condition is not None else query

    total_orders, total_revenue, average = db.execute(
        scoped(select(func.count(Order.id), func.sum(Order.total), func.avg(Order.total)))
    ).one()
    total_orders = int(total_orders or 0)

    status_rows = db.execute(
        scoped(select(Order.status, func.count(Order.id)).group_by(Order.status))
    ).all()
    status_breakdown = [
        {
            "status": status_value.value,
            "count": count,
            "percentage": (count / total_orders) * 100 if total_orders else 0.0,
        }
        for status_value, count in sorted(status_rows, key=lambda row: row[0].value)
    ]

    spent = func.sum(Order.total).label("total_spent")
    top_rows = db.execute(
        scoped(
            select(
                Customer.id,
                Customer.name,
                Customer.email,
                spent,
                func.count(Order.id).label("order_count"),
            )
            .join(Customer, Customer.id == Order.customer_id)
            .group_by(Customer.id, Customer.name, Customer.email)
            .order_by(spent.desc())
            .limit(TOP_CUSTOMER_LIMIT)
        )
    ).all()

    return {
        "total_orders": total_orders,
        "total_revenue": int(total_revenue or 0),
        "average_order_value": round(average or 0),
        "status_breakdown": status_breakdown,
        "revenue_by_period": _revenue_by_period(db, condition, period),
        "top_customers": [
            {
                "customer_id": str(row.id),
                "name": row.name,
                "email": row.email,
                "total_spent": int(row.total_spent or 0),
                "order_count": row.order_count,
            }
            for row in top_rows
        ],
    }


def get_order_statistics(
    db: Session,
    cache: AnalyticsCache,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    period: Period = "daily",
    ttl_s: int = 300,
) -> dict[str, Any]:
    return cache.get_or_compute(
        statistics_cache_key(start_date, end_date, period),
        lambda: compute_order_statistics(db, start_date, end_date, period),
        ttl_s,
    )


def compute_dashboard_metrics(db: Session) -> dict[str, Any]:
    counts = dict(db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all())
    revenue, refunded = db.execute(
        select(func.sum(Order.total), func.sum(Order.refund_amount))
    ).one()
    return {
        "orders_by_status": {status_value.value: counts.get(status_value, 0) for status_value in OrderStatus},
        "gross_revenue": int(revenue or 0),
        "refunded_total": int(refunded or 0),
        "net_revenue": int(revenue or 0) - int(refunded or 0),
        "open_orders": sum(
            counts.get(status_value, 0)
            for status_value in (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.SHIPPED)
        ),
    }


def get_dashboard_metrics(db: Session, cache: AnalyticsCache, *, ttl_s: int = 300) -> dict[str, Any]:
    return cache.get_or_compute(ADMIN_METRICS_KEY, lambda: compute_dashboard_metrics(db), ttl_s)
